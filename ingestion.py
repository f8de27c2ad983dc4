"""
Anonymous response ingestion.

Submission is open to anyone holding an assessment link. No principal is
accepted here and no user table is read: the only identifier is the
anonymous_id token the survey front end generates per session.

One row is kept per (assessment, question, anonymous_id). Resubmitting
replaces the earlier value, and the acknowledgement is the same whether or
not a previous answer existed.
"""
import re
from dataclasses import dataclass
from typing import Dict, Any, Iterable, Union

from db import get_db
from errors import NotFound, InvalidSubmission
from logging_config import get_logger

logger = get_logger(__name__)

ANONYMOUS_ID_PATTERN = re.compile(r'[A-Za-z0-9_-]{16,64}')
WHOLE_NUMBER_PATTERN = re.compile(r'-?[0-9]+')

MAX_TEXT_LENGTH = 5000
MAX_CHOICE_LENGTH = 500

YES_VALUES = ('yes', 'true', '1')
NO_VALUES = ('no', 'false', '0')


@dataclass(frozen=True)
class Ack:
    received: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {'received': self.received}


def validate_anonymous_id(anonymous_id) -> str:
    if not isinstance(anonymous_id, str) or not ANONYMOUS_ID_PATTERN.fullmatch(anonymous_id):
        raise InvalidSubmission("Invalid respondent token")
    return anonymous_id


def validate_value(question, value) -> str:
    """Check an answer against its question and return the stored text form."""
    question_type = question['question_type']

    if value is None or (isinstance(value, str) and not value.strip()):
        if question['is_required']:
            raise InvalidSubmission("An answer is required")
        return None

    if question_type == 'likert_scale':
        if isinstance(value, bool):
            raise InvalidSubmission("Answer must be a whole number")
        if isinstance(value, str):
            value = value.strip()
            if not WHOLE_NUMBER_PATTERN.fullmatch(value):
                raise InvalidSubmission("Answer must be a whole number")
            value = int(value)
        if not isinstance(value, int):
            raise InvalidSubmission("Answer must be a whole number")
        if value < question['min_value'] or value > question['max_value']:
            raise InvalidSubmission(
                f"Answer must be between {question['min_value']} and {question['max_value']}"
            )
        return str(value)

    if question_type == 'yes_no':
        normalized = str(value).strip().lower()
        if normalized in YES_VALUES:
            return 'yes'
        if normalized in NO_VALUES:
            return 'no'
        raise InvalidSubmission("Answer must be yes or no")

    if not isinstance(value, str):
        raise InvalidSubmission("Answer must be text")

    limit = MAX_CHOICE_LENGTH if question_type == 'single_choice' else MAX_TEXT_LENGTH
    if len(value) > limit:
        raise InvalidSubmission(f"Answer is longer than {limit} characters")
    return value.strip()


def _active_assessment(conn, assessment_id: str):
    # Missing and not-active look the same to the respondent
    row = conn.execute("""
        SELECT id, organization_id, questionnaire_id, department_id, title
        FROM assessments
        WHERE id = ? AND status = 'active'
    """, (assessment_id,)).fetchone()
    if not row:
        raise NotFound()
    return row


def _question_for(conn, assessment, question_id: str):
    row = conn.execute("""
        SELECT id, question_type, min_value, max_value, is_required
        FROM questions
        WHERE id = ? AND questionnaire_id = ?
    """, (question_id, assessment['questionnaire_id'])).fetchone()
    if not row:
        raise InvalidSubmission("Question is not part of this assessment")
    return row


def _resolve_department(conn, assessment, department_id):
    if not department_id:
        return assessment['department_id']

    if assessment['department_id'] and department_id != assessment['department_id']:
        raise InvalidSubmission("Unknown department")

    row = conn.execute(
        "SELECT id FROM departments WHERE id = ? AND organization_id = ?",
        (department_id, assessment['organization_id'])
    ).fetchone()
    if not row:
        raise InvalidSubmission("Unknown department")
    return row['id']


def _upsert(conn, assessment_id: str, question_id: str, anonymous_id: str,
            department_id, value):
    conn.execute("""
        INSERT INTO responses (assessment_id, question_id, anonymous_id, department_id, value)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(assessment_id, question_id, anonymous_id) DO UPDATE SET
            value = excluded.value,
            department_id = excluded.department_id,
            updated_at = CURRENT_TIMESTAMP
    """, (assessment_id, question_id, anonymous_id, department_id, value))


def submit_response(assessment_id: str, question_id: str, anonymous_id: str, value,
                    department_id: str = None) -> Ack:
    """
    Store one anonymous answer.

    Raises:
        NotFound: the assessment does not exist or is not collecting answers
        InvalidSubmission: bad token, foreign question, bad value or department
    """
    validate_anonymous_id(anonymous_id)

    with get_db() as conn:
        assessment = _active_assessment(conn, assessment_id)
        question = _question_for(conn, assessment, question_id)
        stored_value = validate_value(question, value)
        department = _resolve_department(conn, assessment, department_id)
        _upsert(conn, assessment['id'], question['id'], anonymous_id, department, stored_value)

    logger.info("Response received", extra={'extra_data': {'assessment_id': assessment_id}})
    return Ack()


def submit_answers(assessment_id: str, anonymous_id: str,
                   answers: Union[Dict[str, Any], Iterable], department_id: str = None) -> Ack:
    """
    Store a whole survey session in one transaction.

    answers is either {question_id: value} or an iterable of
    {'question_id': ..., 'value': ...} dicts. Nothing is stored if any answer
    is invalid.
    """
    validate_anonymous_id(anonymous_id)

    if isinstance(answers, dict):
        pairs = list(answers.items())
    else:
        try:
            pairs = [(item['question_id'], item.get('value')) for item in answers]
        except (TypeError, KeyError, AttributeError):
            raise InvalidSubmission("Answers must map question ids to values")
    if not pairs:
        raise InvalidSubmission("No answers given")

    with get_db() as conn:
        assessment = _active_assessment(conn, assessment_id)
        department = _resolve_department(conn, assessment, department_id)

        validated = []
        for question_id, value in pairs:
            question = _question_for(conn, assessment, question_id)
            validated.append((question['id'], validate_value(question, value)))

        for question_id, stored_value in validated:
            _upsert(conn, assessment['id'], question_id, anonymous_id, department, stored_value)

    logger.info("Survey session received", extra={'extra_data': {
        'assessment_id': assessment_id,
        'answers': len(pairs),
    }})
    return Ack()


def list_public_questions(assessment_id: str) -> Dict[str, Any]:
    """Questions of an active assessment, as shown to respondents."""
    with get_db() as conn:
        assessment = _active_assessment(conn, assessment_id)
        rows = conn.execute("""
            SELECT id, text, question_type, category, min_value, max_value, order_index, is_required
            FROM questions
            WHERE questionnaire_id = ?
            ORDER BY order_index, id
        """, (assessment['questionnaire_id'],)).fetchall()

    return {
        'assessment_id': assessment['id'],
        'title': assessment['title'],
        'questions': [dict(row) for row in rows],
    }
