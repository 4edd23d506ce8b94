"""
Configuration management using Pydantic models loaded from YAML.
"""

from datetime import date, time, timedelta
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .adapters.memory import InMemoryAvailabilityRepository
from .domain.models import (
    AvailabilityException,
    AvailabilityTemplate,
    ExceptionKind,
    resolve_timezone,
)

DEFAULT_CONFIG_NAME = "slotkeeper.yaml"


def _reject_sexagesimal(value: Any) -> Any:
    # PyYAML reads an unquoted 17:00 as the integer 1020.
    if isinstance(value, int):
        raise ValueError(f"Times must be quoted strings like '17:00', got {value}")
    return value


class PolicyConfig(BaseModel):
    """Scheduling policies."""
    max_range_days: int = 90
    cancellation_window_hours: float = 24
    auto_confirm: bool = False
    lock_timeout_seconds: float = 2.0
    pending_expiry_minutes: int = 30  # 0 disables expiry

    @field_validator("max_range_days")
    @classmethod
    def validate_max_range(cls, value: int) -> int:
        """Ensure the query window limit is positive."""
        if value <= 0:
            raise ValueError("max_range_days must be greater than zero")
        return value

    @field_validator("cancellation_window_hours", "pending_expiry_minutes")
    @classmethod
    def validate_not_negative(cls, value):
        if value < 0:
            raise ValueError("Policy durations must not be negative")
        return value

    @field_validator("lock_timeout_seconds")
    @classmethod
    def validate_lock_timeout(cls, value: float) -> float:
        """A reservation must never wait forever for its guard."""
        if value <= 0:
            raise ValueError("lock_timeout_seconds must be greater than zero")
        return value

    def cancellation_window(self) -> timedelta:
        return timedelta(hours=self.cancellation_window_hours)

    def pending_expiry(self) -> Optional[timedelta]:
        if not self.pending_expiry_minutes:
            return None
        return timedelta(minutes=self.pending_expiry_minutes)


class TemplateConfig(BaseModel):
    """Weekly availability template of a professional."""
    weekdays: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])  # 0=Monday
    start: time = time(9, 0)
    end: time = time(17, 0)
    slot_minutes: int = 30
    gap_minutes: int = 0
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0
    timezone: Optional[str] = None  # Falls back to the global timezone
    effective_from: Optional[date] = None

    @field_validator("start", "end", mode="before")
    @classmethod
    def validate_time_format(cls, value: Any) -> Any:
        return _reject_sexagesimal(value)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            resolve_timezone(value)
        return value

    @field_validator("weekdays")
    @classmethod
    def validate_weekdays(cls, value: List[int]) -> List[int]:
        """Ensure weekdays are in valid range and deduplicated."""
        invalid_days = [day for day in value if day not in range(7)]
        if invalid_days:
            raise ValueError(f"weekdays must be between 0 and 6, got {invalid_days}")
        # Preserve order while removing duplicates
        seen: set[int] = set()
        deduped: List[int] = []
        for day in value:
            if day not in seen:
                deduped.append(day)
                seen.add(day)
        return deduped

    @field_validator("slot_minutes")
    @classmethod
    def validate_slot_minutes(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("slot_minutes must be greater than zero")
        return value

    @field_validator("gap_minutes", "buffer_before_minutes", "buffer_after_minutes")
    @classmethod
    def validate_padding(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Gap and buffers must not be negative")
        return value

    @model_validator(mode="after")
    def validate_hours_order(self) -> "TemplateConfig":
        """Ensure the working window opens before it closes."""
        if self.end <= self.start:
            raise ValueError("end must be later than start")
        return self

    def to_template(self, professional_id: str, default_timezone: str) -> AvailabilityTemplate:
        return AvailabilityTemplate(
            professional_id=professional_id,
            weekdays=frozenset(self.weekdays),
            start_time=self.start,
            end_time=self.end,
            slot_minutes=self.slot_minutes,
            gap_minutes=self.gap_minutes,
            buffer_before_minutes=self.buffer_before_minutes,
            buffer_after_minutes=self.buffer_after_minutes,
            timezone=self.timezone or default_timezone,
            effective_from=self.effective_from,
        )


class ExceptionConfig(BaseModel):
    """Dated BLOCK or ADD override."""
    kind: ExceptionKind
    start_date: date
    end_date: Optional[date] = None  # Defaults to start_date
    start: Optional[time] = None
    end: Optional[time] = None
    reason: str = ""

    @field_validator("start", "end", mode="before")
    @classmethod
    def validate_time_format(cls, value: Any) -> Any:
        return _reject_sexagesimal(value)

    @model_validator(mode="after")
    def validate_rule(self) -> "ExceptionConfig":
        """Run the domain checks early so a bad file fails at load time."""
        self.to_exception("config")
        return self

    def to_exception(self, professional_id: str) -> AvailabilityException:
        return AvailabilityException(
            professional_id=professional_id,
            kind=self.kind,
            start_date=self.start_date,
            end_date=self.end_date or self.start_date,
            start_time=self.start,
            end_time=self.end,
            reason=self.reason,
        )


class ProfessionalConfig(BaseModel):
    """A professional and their availability rules."""
    id: str
    name: str = ""
    templates: List[TemplateConfig] = Field(default_factory=lambda: [TemplateConfig()])
    exceptions: List[ExceptionConfig] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        """IDs are opaque; numeric IDs from YAML are kept as strings."""
        return str(value)

    def display_name(self) -> str:
        return self.name or self.id


class AppConfig(BaseModel):
    """Application configuration."""
    timezone: str = "UTC"
    log_level: str = "WARNING"
    data_file: Path = Path("appointments.json")
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    professionals: List[ProfessionalConfig] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Reject unknown IANA names early (ValidationError is a ValueError)."""
        resolve_timezone(value)
        return value

    @field_validator("professionals")
    @classmethod
    def validate_professionals(cls, value: List[ProfessionalConfig]) -> List[ProfessionalConfig]:
        """Ensure professional IDs are unique."""
        seen_ids: set[str] = set()
        for professional in value:
            if professional.id in seen_ids:
                raise ValueError(f"Duplicate professional id detected: {professional.id}")
            seen_ids.add(professional.id)
        return value

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a {DEFAULT_CONFIG_NAME} file. See README.md for an example."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        config = cls(**data)
        if not config.data_file.is_absolute():
            config.data_file = config_path.parent / config.data_file
        return config

    def find_professional(self, professional_id: str) -> ProfessionalConfig | None:
        """Find a professional by ID."""
        for professional in self.professionals:
            if professional.id == professional_id:
                return professional
        return None

    def build_availability(self) -> InMemoryAvailabilityRepository:
        """Convert the configured rules into an availability repository."""
        repository = InMemoryAvailabilityRepository()

        for professional in self.professionals:
            for template in professional.templates:
                repository.add_template(template.to_template(professional.id, self.timezone))
            for exception in professional.exceptions:
                repository.add_exception(exception.to_exception(professional.id))

        return repository


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for slotkeeper.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / DEFAULT_CONFIG_NAME

    if not config_path.exists():
        # Try in the project root (parent of the package)
        project_root = Path(__file__).parent.parent
        config_path = project_root / DEFAULT_CONFIG_NAME

    return config_path
