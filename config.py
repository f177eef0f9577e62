"""
Mousepad Studio configuration

Every setting is read from the environment (a local .env file is honoured in
development). The two deployment choices that used to be separate code paths,
how an owner is identified and how images are accepted, are selected here.
"""
import os
from enum import Enum
from typing import Dict, Any, List

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class OwnerIdentityStrategy(str, Enum):
    email = "email"
    user_id = "user_id"


class ImageStrategy(str, Enum):
    transform_on_write = "transform_on_write"
    reject_inline = "reject_inline"


class ImageTypeConfig(BaseModel):
    folder: str
    target_format: str = Field("jpeg", description="jpeg | webp")
    quality: int = Field(80, ge=1, le=100)
    max_width: int = 1920
    max_height: int = 1080
    transformation: Dict[str, Any] = {}


class FallbackConfig(BaseModel):
    use_original: bool = True
    continue_on_error: bool = True


def default_image_types(target_format: str = "jpeg") -> Dict[str, ImageTypeConfig]:
    return {
        "main": ImageTypeConfig(
            folder="mousepad/main",
            target_format=target_format,
            quality=80,
            transformation={"quality": "auto", "fetch_format": "auto", "width": 800, "height": 600, "crop": "fill"},
        ),
        "final": ImageTypeConfig(
            folder="mousepad/final",
            target_format=target_format,
            quality=85,
            transformation={"quality": "auto", "fetch_format": "auto", "width": 1200, "height": 800, "crop": "fill"},
        ),
        "configuration": ImageTypeConfig(
            folder="mousepad/config",
            target_format=target_format,
            quality=80,
            transformation={"quality": "auto", "fetch_format": "auto", "width": 600, "height": 400, "crop": "fill"},
        ),
    }


class ImageConfig(BaseModel):
    strategy: ImageStrategy = ImageStrategy.reject_inline
    max_inline_bytes: int = 10 * 1024 * 1024
    image_types: Dict[str, ImageTypeConfig] = Field(default_factory=default_image_types)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)


class CloudinaryConfig(BaseModel):
    cloud_name: str = ""
    api_key: str = ""
    api_secret: str = ""
    timeout: float = 30.0

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)


class EmailConfig(BaseModel):
    enabled: bool = True
    api_key: str = ""
    api_url: str = "https://api.brevo.com/v3/smtp/email"
    sender_email: str = "noreply@mousepad.com"
    sender_name: str = "Mousepad Store"
    admin_email: str = "admin@mousepad.com"
    timeout: float = 15.0


class Settings(BaseModel):
    environment: str = "development"
    store_name: str = "Mousepad Studio"
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "mousepad"
    owner_strategy: OwnerIdentityStrategy = OwnerIdentityStrategy.email
    jwt_secret: str = "devsecret_change_me"
    admin_api_key: str = ""
    allowed_origins: List[str] = ["*"]
    image: ImageConfig = Field(default_factory=ImageConfig)
    cloudinary: CloudinaryConfig = Field(default_factory=CloudinaryConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    notify_on_any_payment_status: bool = False
    background_workers: int = 4
    background_max_attempts: int = 3
    background_retry_delay: float = 1.0

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() not in ("false", "0", "no", "off")


def load_settings() -> Settings:
    load_dotenv()
    target_format = os.getenv("IMAGE_TARGET_FORMAT", "jpeg").lower()
    origins = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]
    return Settings(
        environment=os.getenv("APP_ENV", "development"),
        store_name=os.getenv("STORE_NAME", "Mousepad Studio"),
        database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=os.getenv("DATABASE_NAME", "mousepad"),
        owner_strategy=OwnerIdentityStrategy(os.getenv("OWNER_STRATEGY", "email")),
        jwt_secret=os.getenv("JWT_SECRET", "devsecret_change_me"),
        admin_api_key=os.getenv("ADMIN_API_KEY", ""),
        allowed_origins=origins or ["*"],
        image=ImageConfig(
            strategy=ImageStrategy(os.getenv("IMAGE_STRATEGY", "reject_inline")),
            max_inline_bytes=int(os.getenv("IMAGE_MAX_INLINE_BYTES", str(10 * 1024 * 1024))),
            image_types=default_image_types(target_format),
            fallback=FallbackConfig(
                use_original=_flag("IMAGE_FALLBACK_USE_ORIGINAL", "true"),
                continue_on_error=_flag("IMAGE_CONTINUE_ON_ERROR", "true"),
            ),
        ),
        cloudinary=CloudinaryConfig(
            cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME", ""),
            api_key=os.getenv("CLOUDINARY_API_KEY", ""),
            api_secret=os.getenv("CLOUDINARY_API_SECRET", ""),
        ),
        email=EmailConfig(
            enabled=_flag("EMAIL_ENABLED", "true"),
            api_key=os.getenv("BREVO_API_KEY", ""),
            sender_email=os.getenv("EMAIL_FROM", "noreply@mousepad.com"),
            sender_name=os.getenv("EMAIL_FROM_NAME", "Mousepad Store"),
            admin_email=os.getenv("ADMIN_EMAIL", "admin@mousepad.com"),
            timeout=float(os.getenv("EMAIL_TIMEOUT_SECONDS", "15")),
        ),
        notify_on_any_payment_status=_flag("NOTIFY_ON_ANY_PAYMENT_STATUS", "false"),
        background_workers=int(os.getenv("BACKGROUND_WORKERS", "4")),
        background_max_attempts=int(os.getenv("BACKGROUND_MAX_ATTEMPTS", "3")),
        background_retry_delay=float(os.getenv("BACKGROUND_RETRY_DELAY", "1.0")),
    )
