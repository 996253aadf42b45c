from dataclasses import dataclass


@dataclass
class AppConfig:
    name: str
    secret_key: str
    base_currency: str


@dataclass
class BillingConfig:
    trial_days: int
    currency: str
    default_plan_id: str
    invoice_number_pattern: str
    trial_warning_days: int


@dataclass
class StripeConfig:
    enabled: bool
    secret_key: str
    webhook_secret: str
