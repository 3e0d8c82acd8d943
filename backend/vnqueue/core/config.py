import os
from pydantic import BaseModel, field_validator


class Settings(BaseModel):
    QUEUE_API_URL: str = "http://localhost:3000"
    QUEUE_WS_URL: str = "ws://localhost:3000"
    RECONNECT_DELAY_SECONDS: float = 3.0
    POLL_INTERVAL_SECONDS: float = 5.0
    STAFF_REFRESH_INTERVAL_SECONDS: float = 10.0
    DISPLAY_REFRESH_INTERVAL_SECONDS: float = 3.0
    NOTIFICATION_DURATION_SECONDS: float = 15.0
    NEAR_TURN_THRESHOLD: int = 5
    CALL_NEXT_DELAY_SECONDS: float = 0.5
    REQUEST_TIMEOUT_SECONDS: float = 10.0
    VN_TIMEZONE: str = "Asia/Bangkok"
    LOG_LEVEL: str = "INFO"
    LOG_FILE_PATH: str = "logs/vnqueue.log"

    @field_validator(
        "RECONNECT_DELAY_SECONDS",
        "POLL_INTERVAL_SECONDS",
        "STAFF_REFRESH_INTERVAL_SECONDS",
        "DISPLAY_REFRESH_INTERVAL_SECONDS",
        "NOTIFICATION_DURATION_SECONDS",
        "REQUEST_TIMEOUT_SECONDS",
        "NEAR_TURN_THRESHOLD",
    )
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("CALL_NEXT_DELAY_SECONDS")
    @classmethod
    def must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @classmethod
    def load_from_env(cls):
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(name)
            if raw is not None and raw.strip() != "":
                values[name] = raw.strip()

        # Trailing slashes would double up when paths are joined onto the base URL
        for name in ("QUEUE_API_URL", "QUEUE_WS_URL"):
            if name in values:
                values[name] = values[name].rstrip("/")

        try:
            return cls(**values)
        except Exception as e:
            raise ValueError(f"Invalid queue client configuration: {e}") from e

    def refresh_from_env(self):
        """
        Re-read the environment into this instance in place, so modules that
        imported `settings` see values loaded later (e.g. from a .env file).
        """
        fresh = self.load_from_env()
        for name in type(self).model_fields:
            setattr(self, name, getattr(fresh, name))
        return self


# Load settings immediately so a bad environment fails at startup, not mid-session.
settings = Settings.load_from_env()
