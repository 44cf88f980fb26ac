# config.py

import logging
from typing import Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from slice_dfm.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class Settings(BaseSettings):
    """
    Application configuration settings loaded from environment variables and .env file.
    Every variable is prefixed with SLICE_DFM_ (e.g. SLICE_DFM_LOG_LEVEL=DEBUG).
    """
    model_config = SettingsConfigDict(
        env_prefix='SLICE_DFM_',
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore'  # Ignore unrelated variables in a shared .env
    )

    # Logging Configuration
    log_level: str = Field("INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")

    # Detection Runtime
    max_workers: Optional[int] = Field(None, description="Thread pool size for detection, None = executor default.")
    detection_config_path: Optional[str] = Field(None, description="JSON file with detection settings.")

    # Layer Stack Defaults (used when the input does not carry them)
    layer_height_mm: float = Field(0.05, gt=0, description="Layer height of image directories and .npy volumes.")
    pixel_size_mm: float = Field(0.05, gt=0, description="Size of one pixel on the build plate.")
    machine_z_mm: float = Field(0.0, ge=0, description="Printable height of the machine, 0 disables the print height check.")
    exposure_time_sec: float = Field(2.5, ge=0)

    # Repair
    vent_hole_diameter_px: int = Field(20, gt=0, description="Default vent diameter for suction cup drilling.")

    # Validators
    @field_validator('log_level')
    @classmethod
    def log_level_must_be_valid(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'log_level must be one of {valid_levels}')
        return v.upper()

    @field_validator('max_workers')
    @classmethod
    def max_workers_must_be_positive(cls, v):
        if v is not None and v < 1:
            raise ValueError('max_workers must be at least 1')
        return v


def setup_logging(level: Optional[str] = None) -> None:
    """Configures the root logger from the settings (or an explicit level)."""
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT, force=True)


# --- Singleton Instance ---
# Create a single instance of the settings to be imported across the application
try:
    settings = Settings()
except ValidationError as e:
    logging.basicConfig(level='INFO', format=LOG_FORMAT)
    logger.error(f"CRITICAL: Failed to load application configuration: {e}")
    raise ConfigurationError(f"Invalid application settings: {e}") from e
