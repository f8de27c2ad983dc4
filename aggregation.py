"""
Aggregation & Suppression Engine

Computes bucketed statistics over anonymous responses for one assessment.

Every call is scoped by the caller's Principal through TenantScope. All rows
for a call are read in a single transaction, and both the respondent count
and the value of a bucket are derived from that one row set, so a response
arriving mid-computation can never shift a value without also moving the
suppression decision.

Scores use the 1-5 likert scale. Questions where agreement means lower risk
(risk_inverted = 0) are mirrored so that a higher score always means higher
psychosocial risk.
"""
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from config import BUCKET_TYPES, SuppressionThresholds, get_thresholds
from db import snapshot, RISK_CATEGORIES
from errors import AggregationCancelled, NotFound
from logging_config import get_logger
from suppression import suppression_status, needs_more_message
from tenant_store import TenantScope

logger = get_logger(__name__)

# Risk bands on the normalized score
HIGH_RISK = 3.5
MEDIUM_RISK = 2.5

NUMERIC_TYPES = ('likert_scale',)

# Check for cancellation every N rows
CANCEL_CHECK_INTERVAL = 500


@dataclass(frozen=True)
class AggregationScope:
    assessment_id: str
    department_id: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class AggregateStatistic:
    bucket_type: str
    bucket_key: Optional[str]
    sample_count: int
    suppressed: bool
    remaining: int
    value: Optional[float] = None
    risk_level: Optional[str] = None
    label: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return needs_more_message(self.remaining) if self.suppressed else None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'bucket_type': self.bucket_type,
            'bucket_key': self.bucket_key,
            'label': self.label,
            'sample_count': self.sample_count,
            'suppressed': self.suppressed,
            'remaining': self.remaining,
        }
        if self.suppressed:
            data['message'] = self.message
        else:
            data['value'] = self.value
            data['risk_level'] = self.risk_level
        return data


def normalize_score(value, risk_inverted=True, min_value: int = 1, max_value: int = 5) -> Optional[float]:
    """
    Convert a raw answer to a risk score on the question's scale.
    Returns None for answers that are not numbers inside the scale.
    """
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if score < min_value or score > max_value:
        return None
    if not risk_inverted:
        score = (min_value + max_value) - score
    return score


def classify_risk(score: Optional[float]) -> Optional[str]:
    if score is None:
        return None
    if score >= HIGH_RISK:
        return 'high'
    if score >= MEDIUM_RISK:
        return 'medium'
    return 'low'


@dataclass
class _Bucket:
    label: Optional[str] = None
    order: Any = 0
    respondents: set = field(default_factory=set)
    scorers: set = field(default_factory=set)
    scores: list = field(default_factory=list)


class _Deadline:
    def __init__(self, cancel_event=None, timeout: Optional[float] = None):
        self.cancel_event = cancel_event
        self.expires_at = time.monotonic() + timeout if timeout is not None else None

    def check(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise AggregationCancelled()
        if self.expires_at is not None and time.monotonic() >= self.expires_at:
            raise AggregationCancelled("Aggregation timed out")


def _bucket_key(row, group_by: str, assessment_id: str):
    if group_by == 'assessment':
        return assessment_id
    if group_by == 'department':
        return row['department_id']
    if group_by == 'category':
        return row['category']
    return row['question_id']


def _bucket_label_and_order(row, group_by: str, assessment: Dict, department_names: Dict):
    if group_by == 'assessment':
        return assessment['title'], 0
    if group_by == 'department':
        name = department_names.get(row['department_id'], 'No department')
        return name, name
    if group_by == 'category':
        category = row['category']
        order = RISK_CATEGORIES.index(category) if category in RISK_CATEGORIES else len(RISK_CATEGORIES)
        return category or 'uncategorized', order
    return row['question_text'], (row['order_index'], row['question_id'])


def _build_statistic(group_by: str, key, bucket: _Bucket,
                     thresholds: SuppressionThresholds) -> AggregateStatistic:
    status = suppression_status(len(bucket.respondents), group_by, thresholds)
    if status.suppressed:
        return AggregateStatistic(
            bucket_type=group_by,
            bucket_key=key,
            sample_count=status.sample_count,
            suppressed=True,
            remaining=status.remaining,
            label=bucket.label,
        )

    # The value is withheld unless enough respondents actually contributed a score
    value = None
    if bucket.scores and len(bucket.scorers) >= thresholds.for_bucket(group_by):
        value = round(sum(bucket.scores) / len(bucket.scores), 2)
    return AggregateStatistic(
        bucket_type=group_by,
        bucket_key=key,
        sample_count=status.sample_count,
        suppressed=False,
        remaining=0,
        value=value,
        risk_level=classify_risk(value),
        label=bucket.label,
    )


def aggregate(principal, scope: AggregationScope, group_by: str = 'assessment',
              thresholds: SuppressionThresholds = None, cancel_event=None,
              timeout: Optional[float] = None) -> List[AggregateStatistic]:
    """
    Bucketed statistics for one assessment, with small-group suppression.

    Args:
        principal: The caller; only its own organization's assessment is read
        scope: Assessment, optionally narrowed to a department and/or category
        group_by: One of 'assessment', 'department', 'category', 'question'
        thresholds: Override the configured thresholds
        cancel_event: threading.Event; when set the computation stops
        timeout: Seconds before the computation stops

    Returns:
        One AggregateStatistic per bucket. Empty for an assessment that does
        not exist or belongs to another organization.

    Raises:
        AggregationCancelled: cancelled or timed out; no data is returned
        StoreUnavailable: the store could not be read
    """
    if group_by not in BUCKET_TYPES:
        raise ValueError(f"group_by must be one of {BUCKET_TYPES}")

    thresholds = thresholds or get_thresholds()
    deadline = _Deadline(cancel_event, timeout)
    tenant = TenantScope(principal)
    deadline.check()

    with snapshot() as conn:
        try:
            assessment = tenant.get_assessment(scope.assessment_id, conn=conn)
        except NotFound:
            return []

        department_names = {}
        if group_by == 'department':
            department_names = {d['id']: d['name'] for d in tenant.list_departments(conn=conn)}

        rows = tenant.response_rows(
            scope.assessment_id, conn,
            department_id=scope.department_id,
            category=scope.category,
        )
        deadline.check()

    buckets = defaultdict(_Bucket)
    if group_by == 'assessment':
        buckets[scope.assessment_id].label = assessment['title']

    for index, row in enumerate(rows):
        if index % CANCEL_CHECK_INTERVAL == 0:
            deadline.check()

        key = _bucket_key(row, group_by, scope.assessment_id)
        bucket = buckets[key]
        if bucket.label is None or not bucket.respondents:
            bucket.label, bucket.order = _bucket_label_and_order(row, group_by, assessment, department_names)
        bucket.respondents.add(row['anonymous_id'])

        if row['question_type'] in NUMERIC_TYPES:
            score = normalize_score(row['value'], bool(row['risk_inverted']),
                                    row['min_value'], row['max_value'])
            if score is not None:
                bucket.scores.append(score)
                bucket.scorers.add(row['anonymous_id'])

    deadline.check()
    ordered = sorted(buckets.items(), key=lambda item: (item[1].order, str(item[0])))
    statistics = [_build_statistic(group_by, key, bucket, thresholds) for key, bucket in ordered]

    # Final check so a cancellation during computation never yields results
    deadline.check()

    logger.info("Aggregation computed", extra={'extra_data': {
        'assessment_id': scope.assessment_id,
        'group_by': group_by,
        'buckets': len(statistics),
        'suppressed': sum(1 for s in statistics if s.suppressed),
    }})
    return statistics


def summarize_assessment(principal, assessment_id: str,
                         thresholds: SuppressionThresholds = None) -> Dict[str, Any]:
    """
    Headline numbers for an assessment.

    While the assessment bucket is suppressed only the participant count and
    the number of missing responses are released.
    """
    thresholds = thresholds or get_thresholds()
    tenant = TenantScope(principal)

    with snapshot() as conn:
        assessment = tenant.get_assessment(assessment_id, conn=conn)
        questions = conn.execute("""
            SELECT COUNT(*) AS total, COALESCE(SUM(is_required), 0) AS required
            FROM questions WHERE questionnaire_id = ?
        """, (assessment['questionnaire_id'],)).fetchone()
        rows = tenant.response_rows(assessment_id, conn)

    respondents = {row['anonymous_id'] for row in rows}
    status = suppression_status(len(respondents), 'assessment', thresholds)

    summary = {
        'assessment_id': assessment['id'],
        'title': assessment['title'],
        'status': assessment['status'],
        'question_count': questions['total'],
        **status.as_dict(),
    }
    if status.suppressed:
        summary['completion_rate'] = None
        summary['last_response_at'] = None
        return summary

    expected = len(respondents) * (questions['required'] or questions['total'])
    summary['completion_rate'] = round(min(1.0, len(rows) / expected) * 100, 1) if expected else None
    summary['last_response_at'] = max(row['created_at'] for row in rows)
    return summary
