"""
Small-group suppression.

A statistic over a bucket of respondents is visible only when the number of
distinct respondents in that bucket reaches the bucket's threshold. The
comparison is inclusive and monotonic: once a bucket is visible, more
responses never hide it again.
"""
from dataclasses import dataclass
from typing import Dict, Any

from config import SuppressionThresholds, get_thresholds
from logging_config import get_logger

logger = get_logger(__name__)


def needs_more_message(remaining: int) -> str:
    """Neutral message shown in place of a suppressed value."""
    return f"Needs {remaining} more responses"


def is_visible(sample_count: int, threshold: int) -> bool:
    return sample_count >= threshold


@dataclass(frozen=True)
class SuppressionStatus:
    bucket_type: str
    sample_count: int
    threshold: int

    @property
    def suppressed(self) -> bool:
        return not is_visible(self.sample_count, self.threshold)

    @property
    def remaining(self) -> int:
        return max(0, self.threshold - self.sample_count)

    @property
    def percent_complete(self) -> int:
        return min(100, round(self.sample_count / self.threshold * 100))

    @property
    def message(self):
        return needs_more_message(self.remaining) if self.suppressed else None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'sample_count': self.sample_count,
            'suppressed': self.suppressed,
            'remaining': self.remaining,
            'percent_complete': self.percent_complete,
            'message': self.message,
        }


def suppression_status(sample_count: int, bucket_type: str,
                       thresholds: SuppressionThresholds = None) -> SuppressionStatus:
    """Decide visibility of one bucket."""
    if sample_count < 0:
        raise ValueError("sample_count cannot be negative")
    thresholds = thresholds or get_thresholds()
    status = SuppressionStatus(
        bucket_type=bucket_type,
        sample_count=sample_count,
        threshold=thresholds.for_bucket(bucket_type),
    )
    if status.suppressed:
        logger.debug("Bucket suppressed", extra={'extra_data': {
            'bucket_type': bucket_type,
            'sample_count': sample_count,
            'threshold': status.threshold,
        }})
    return status
