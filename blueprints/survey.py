"""
Survey blueprint - anonymous respondent endpoints.

No session, principal or client address is read or logged on these routes.
Rate limits are keyed on the assessment link, not on the client.

Routes:
- GET  /survey/<assessment_id>/questions - Questions of an active assessment
- POST /survey/<assessment_id>/responses - Submit answers
"""

from flask import Blueprint, jsonify, request

from extensions import limiter, get_survey_key
from errors import InvalidSubmission
from ingestion import list_public_questions, submit_answers, submit_response

survey_bp = Blueprint('survey', __name__, url_prefix='/survey')


@survey_bp.route('/<assessment_id>/questions', methods=['GET'])
@limiter.limit("600 per minute", key_func=get_survey_key)
def questions(assessment_id):
    return jsonify(list_public_questions(assessment_id))


@survey_bp.route('/<assessment_id>/responses', methods=['POST'])
@limiter.limit("600 per minute", key_func=get_survey_key)
def responses(assessment_id):
    """
    Body, either a whole session:
        {"anonymous_id": "...", "answers": {"<question_id>": 4, ...}, "department_id": "..."}
    or a single answer:
        {"anonymous_id": "...", "question_id": "...", "value": 4}

    The reply is the same whether or not the token answered before.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidSubmission()

    if 'answers' in data:
        ack = submit_answers(
            assessment_id,
            data.get('anonymous_id'),
            data['answers'],
            department_id=data.get('department_id'),
        )
    else:
        ack = submit_response(
            assessment_id,
            data.get('question_id'),
            data.get('anonymous_id'),
            data.get('value'),
            department_id=data.get('department_id'),
        )
    return jsonify(ack.to_dict()), 202
