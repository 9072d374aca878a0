"""Configuration models and loading utilities."""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

CONFIG_ENV_VAR = "PARKING_BOOKING_CONFIG"


class APIConfig(BaseModel):
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseConfig(BaseModel):
    """Persistence configuration."""

    url: str = "sqlite:///parking.db"  # "memory://" for in-process stores

    @field_validator("url", mode="before")
    @classmethod
    def resolve_env_var(cls, v: str) -> str:
        """Resolve environment variable references like ${VAR_NAME}."""
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            env_var = v[2:-1]
            return os.environ.get(env_var, "")
        return v

    @property
    def in_memory(self) -> bool:
        return self.url.startswith("memory://")


class PricingConfig(BaseModel):
    price_per_hour: float = Field(50, ge=0)


class ReservationConfig(BaseModel):
    window_minutes: int = Field(60, ge=1)  # Time allowed to request occupied


class LayoutConfig(BaseModel):
    """Physical slots created at first startup."""

    sections: list[str] = ["A", "B", "C"]
    slots_per_section: int = Field(6, ge=1)

    def slot_ids(self) -> list[str]:
        return [
            f"{section}-{number:02d}"
            for section in self.sections
            for number in range(1, self.slots_per_section + 1)
        ]


class AdminConfig(BaseModel):
    """Administrator account ensured at startup."""

    id: str = "admin"
    name: str = "Administrator"
    email: str = "admin@parking.local"


class AppConfig(BaseModel):
    """Main application configuration."""

    api: APIConfig = APIConfig()
    database: DatabaseConfig = DatabaseConfig()
    pricing: PricingConfig = PricingConfig()
    reservation: ReservationConfig = ReservationConfig()
    layout: LayoutConfig = LayoutConfig()
    admin: AdminConfig = AdminConfig()


def load_config(path: str | Path) -> AppConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to the configuration file

    Returns:
        Validated AppConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    config_path = Path(path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    return AppConfig(**data)


def get_config_path() -> Path:
    """Get the configuration file path, honouring PARKING_BOOKING_CONFIG."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)

    local_config = Path("config/config.yaml")
    if local_config.exists():
        return local_config

    # Container layout
    app_config = Path("/app/config/config.yaml")
    if app_config.exists():
        return app_config

    return local_config  # Return default even if doesn't exist
