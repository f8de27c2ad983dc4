"""
Suppression threshold configuration.

Minimum number of distinct respondents before an aggregate may be disclosed,
one named value per bucket type. Values come from the environment so they can
be tuned per deployment, and are validated on load so a typo cannot silently
lower a floor.

Environment:
    SUPPRESSION_MIN_ASSESSMENT          (default 10)
    SUPPRESSION_MIN_DEPARTMENT          (default 5)
    SUPPRESSION_MIN_CATEGORY            (default 5)
    SUPPRESSION_MIN_QUESTION            (default 3)
    SUPPRESSION_MIN_DETAILED_RESPONSES  (default 10)
"""
import os
from dataclasses import dataclass, asdict
from typing import Dict


BUCKET_TYPES = ('assessment', 'department', 'category', 'question')

# Everything that has its own floor: the aggregate buckets plus raw answer listings
DISCLOSURE_LEVELS = BUCKET_TYPES + ('detailed_responses',)


@dataclass(frozen=True)
class SuppressionThresholds:
    assessment: int = 10
    department: int = 5
    category: int = 5
    question: int = 3
    detailed_responses: int = 10

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ValueError unless every floor is an int > 1 and assessment is the largest."""
        for name, value in asdict(self).items():
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"Threshold '{name}' must be an integer, got {value!r}")
            if value <= 1:
                raise ValueError(f"Threshold '{name}' must be greater than 1, got {value}")

        smaller = {name: getattr(self, name) for name in BUCKET_TYPES if name != 'assessment'}
        for name, value in smaller.items():
            if value >= self.assessment:
                raise ValueError(
                    f"Threshold '{name}' ({value}) must be below the assessment threshold ({self.assessment})"
                )

    def for_bucket(self, bucket_type: str) -> int:
        if bucket_type not in DISCLOSURE_LEVELS:
            raise ValueError(f"Unknown bucket type: {bucket_type!r}")
        return getattr(self, bucket_type)

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_env(cls, environ=None) -> 'SuppressionThresholds':
        environ = os.environ if environ is None else environ
        defaults = cls()
        values = {}
        for name, default in asdict(defaults).items():
            raw = environ.get(f"SUPPRESSION_MIN_{name.upper()}")
            if raw is None or raw == '':
                values[name] = default
                continue
            try:
                values[name] = int(raw)
            except ValueError:
                raise ValueError(f"SUPPRESSION_MIN_{name.upper()} must be an integer, got {raw!r}")
        return cls(**values)


_thresholds = None


def get_thresholds() -> SuppressionThresholds:
    """Process-wide thresholds, loaded once from the environment."""
    global _thresholds
    if _thresholds is None:
        _thresholds = SuppressionThresholds.from_env()
    return _thresholds


def reset_thresholds():
    """Force a reload on next access (used by tests and app startup)."""
    global _thresholds
    _thresholds = None
