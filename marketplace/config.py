from pydantic import BaseModel
import os
from dotenv import load_dotenv
load_dotenv()  # carga el archivo .env de la raíz


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class Settings(BaseModel):
    app_name: str = os.getenv("APP_NAME", "Link Marketplace")
    env: str = os.getenv("APP_ENV", "dev")
    mongodb_uri: str = os.getenv("MONGODB_URI", "mongodb://localhost:27017")
    db_name: str = os.getenv("DB_NAME", "marketplace")
    jwt_secret: str = os.getenv("JWT_SECRET", "change-me")
    frontend_base_url: str = os.getenv("FRONTEND_BASE_URL", "http://localhost:5173")
    client_app_url: str = os.getenv("CLIENT_APP_URL", "https://www.link-22.com")

    # Moyasar
    moyasar_secret_key: str | None = os.getenv("MOYASAR_SECRET_KEY")
    moyasar_callback_url: str | None = os.getenv("MOYASAR_CALLBACK_URL")
    apple_pay_display_name: str = os.getenv("APPLE_PAY_DISPLAY_NAME", "Link")
    apple_pay_domain: str = os.getenv("APPLE_PAY_DOMAIN", "www.link-22.com")

    # PayPal
    paypal_client_id: str | None = os.getenv("PAYPAL_CLIENT_ID")
    paypal_client_secret: str | None = os.getenv("PAYPAL_CLIENT_SECRET")
    paypal_env: str = os.getenv("PAYPAL_ENV", "sandbox").lower()

    # Stripe
    stripe_secret_key: str | None = os.getenv("STRIPE_SECRET_KEY")
    stripe_webhook_secret: str | None = os.getenv("STRIPE_WEBHOOK_SECRET")

    # Email (Resend)
    resend_api_key: str | None = os.getenv("RESEND_API_KEY")
    email_from: str = os.getenv("EMAIL_FROM", "Link <noreply@link-22.com>")

    # Comisiones; providerAmount se calcula en servidor al capturar
    platform_fee_rate: float = float(os.getenv("PLATFORM_FEE_RATE", "0"))
    moyasar_fee_rate: float = float(os.getenv("MOYASAR_FEE_RATE", "0"))
    paypal_fee_rate: float = float(os.getenv("PAYPAL_FEE_RATE", "0"))
    stripe_fee_rate: float = float(os.getenv("STRIPE_FEE_RATE", "0"))

    # Auto-rechazo de reservas pendientes
    auto_reject_after_hours: int = int(os.getenv("AUTO_REJECT_AFTER_HOURS", "24"))
    auto_reject_interval_minutes: int = int(os.getenv("AUTO_REJECT_INTERVAL_MINUTES", "60"))
    scheduler_enabled: bool = _flag("SCHEDULER_ENABLED", "true")

    gateway_timeout: float = float(os.getenv("GATEWAY_TIMEOUT", "15"))

    @property
    def paypal_api_base(self) -> str:
        if self.paypal_env == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    def gateway_fee_rate(self, gateway: str) -> float:
        return {
            "MOYASAR": self.moyasar_fee_rate,
            "PAYPAL": self.paypal_fee_rate,
            "STRIPE": self.stripe_fee_rate,
        }.get(gateway, 0.0)


_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
