"""
Application configuration settings.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Self


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Application
    APP_NAME: str = "shadowcat"
    APP_VERSION: str = "0.1.0"
    ENV: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["text", "json"] = "text"

    # Ability estimation (EAP)
    CAT_INITIAL_THETA: float = 0.0
    CAT_QUADRATURE_POINTS: int = Field(default=41, ge=2)
    CAT_QUADRATURE_MIN: float = -4.0
    CAT_QUADRATURE_MAX: float = 4.0

    # Item selection
    # Penalty for relaxing soft eligibility when exposure control is off
    CAT_DEFAULT_BIG_M: float = Field(default=10.0, ge=0.0)
    # bigM = multiplier * max(information) when exposure control is on
    CAT_BIG_M_MULTIPLIER: float = Field(default=1.5, ge=0.0)
    CAT_EBI_STEPS: int = Field(default=100, ge=1)

    # Exposure control: overall conditioning interval
    CAT_EXPOSURE_THETA_MIN: float = -8.0
    CAT_EXPOSURE_THETA_MAX: float = 8.0

    # Reference MILP solver
    SOLVER_TIME_LIMIT_SECS: float = Field(default=30.0, gt=0.0)
    SOLVER_MIP_REL_GAP: float = Field(default=1e-4, ge=0.0)

    # Simulation harness
    SIMULATION_MAX_WORKERS: int = Field(default=4, ge=1)
    SIMULATION_SEED: int = 42

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra fields from .env not defined in Settings
    )

    @model_validator(mode="after")
    def validate_ranges(self) -> Self:
        """Validate that configured theta ranges are ordered."""
        if self.CAT_QUADRATURE_MIN >= self.CAT_QUADRATURE_MAX:
            raise ValueError(
                f"CAT_QUADRATURE_MIN ({self.CAT_QUADRATURE_MIN}) must be less than "
                f"CAT_QUADRATURE_MAX ({self.CAT_QUADRATURE_MAX})"
            )
        if self.CAT_EXPOSURE_THETA_MIN >= self.CAT_EXPOSURE_THETA_MAX:
            raise ValueError(
                f"CAT_EXPOSURE_THETA_MIN ({self.CAT_EXPOSURE_THETA_MIN}) must be less "
                f"than CAT_EXPOSURE_THETA_MAX ({self.CAT_EXPOSURE_THETA_MAX})"
            )
        return self


settings = Settings()
