from pydantic import BaseModel
import os
from dotenv import load_dotenv
load_dotenv()  # carga el archivo .env de la raíz

class Settings(BaseModel):
    app_name: str = os.getenv("APP_NAME", "HOH108 On-Demand")
    env: str = os.getenv("APP_ENV", "dev")
    mongodb_uri: str = os.getenv("MONGODB_URI", "mongodb://localhost:27017")
    db_name: str = os.getenv("DB_NAME", "hoh108")
    jwt_secret: str = os.getenv("JWT_SECRET", "change-me")
    jwt_expires_hours: int = int(os.getenv("JWT_EXPIRES_HOURS", "8"))
    frontend_base_url: str = os.getenv("FRONTEND_BASE_URL", "http://localhost:5173")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    notification_channel: str = os.getenv("NOTIFICATION_CHANNEL", "log").lower()
    notification_timeout_seconds: float = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))

    # Política del OTP de finalización (configurable por entorno)
    completion_otp_length: int = int(os.getenv("COMPLETION_OTP_LENGTH", "6"))
    completion_otp_ttl_minutes: int = int(os.getenv("COMPLETION_OTP_TTL_MINUTES", "10"))
    completion_otp_max_attempts: int = int(os.getenv("COMPLETION_OTP_MAX_ATTEMPTS", "5"))

    booking_id_prefix: str = os.getenv("BOOKING_ID_PREFIX", "OD-BK-")


_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
