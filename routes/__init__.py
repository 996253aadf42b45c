"""JSON API blueprints: billing (plans, subscription, quota, webhook) and invoices."""

from routes.billing import billing_bp
from routes.invoices import invoices_bp

ALL_BLUEPRINTS = [
    billing_bp,
    invoices_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
