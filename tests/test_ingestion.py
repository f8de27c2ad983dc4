"""
Tests for anonymous response ingestion.
"""
import pytest

from conformance import new_anonymous_id
from db import get_db
from errors import NotFound, InvalidSubmission
from ingestion import (
    Ack, submit_response, submit_answers, list_public_questions,
    validate_anonymous_id, validate_value,
)


def _responses(assessment_id):
    with get_db() as conn:
        rows = conn.execute("""
            SELECT question_id, anonymous_id, department_id, value
            FROM responses WHERE assessment_id = ?
            ORDER BY id
        """, (assessment_id,)).fetchall()
    return [dict(row) for row in rows]


LIKERT = {'question_type': 'likert_scale', 'min_value': 1, 'max_value': 5, 'is_required': 1}


class TestValidation:
    @pytest.mark.parametrize('token', [None, '', 'short', 'has spaces in the token!', 'x' * 65, 12345,
                                       'a' * 20 + '\n'])
    def test_bad_tokens(self, token):
        with pytest.raises(InvalidSubmission):
            validate_anonymous_id(token)

    def test_generated_token_is_valid(self):
        token = new_anonymous_id()
        assert validate_anonymous_id(token) == token

    @pytest.mark.parametrize('value,stored', [(1, '1'), (5, '5'), ('3', '3'), (' 4 ', '4')])
    def test_likert_accepts(self, value, stored):
        assert validate_value(LIKERT, value) == stored

    @pytest.mark.parametrize('value', [0, 6, -1, '7', 'abc', 2.5, True, [3]])
    def test_likert_rejects(self, value):
        with pytest.raises(InvalidSubmission):
            validate_value(LIKERT, value)

    @pytest.mark.parametrize('value', ['\u00b2', '\u0663', '--3', '+3', '3.0'])
    def test_likert_rejects_malformed_numbers(self, value):
        with pytest.raises(InvalidSubmission, match='whole number'):
            validate_value(LIKERT, value)

    @pytest.mark.parametrize('value', [None, '', '   '])
    def test_required_answer(self, value):
        with pytest.raises(InvalidSubmission):
            validate_value(LIKERT, value)

    def test_optional_answer_may_be_empty(self):
        assert validate_value(dict(LIKERT, is_required=0), None) is None

    @pytest.mark.parametrize('value,stored', [('Yes', 'yes'), (True, 'yes'), ('no', 'no'), (0, 'no')])
    def test_yes_no(self, value, stored):
        question = {'question_type': 'yes_no', 'is_required': 1}
        assert validate_value(question, value) == stored

    def test_yes_no_rejects_other(self):
        with pytest.raises(InvalidSubmission):
            validate_value({'question_type': 'yes_no', 'is_required': 1}, 'maybe')

    def test_text_length(self):
        question = {'question_type': 'text', 'is_required': 0}
        assert validate_value(question, ' Too many meetings ') == 'Too many meetings'
        with pytest.raises(InvalidSubmission):
            validate_value(question, 'x' * 5001)

    def test_choice_length(self):
        with pytest.raises(InvalidSubmission):
            validate_value({'question_type': 'single_choice', 'is_required': 1}, 'x' * 501)


class TestSubmitResponse:
    def test_stores_answer_without_identity(self, survey):
        token = new_anonymous_id()
        ack = submit_response(survey['assessment_id'], survey['question_ids'][0], token, 4)

        assert ack == Ack()
        assert ack.to_dict() == {'received': True}
        rows = _responses(survey['assessment_id'])
        assert rows == [{
            'question_id': survey['question_ids'][0],
            'anonymous_id': token,
            'department_id': survey['department_id'],
            'value': '4',
        }]

    def test_duplicate_is_upserted(self, survey):
        token = new_anonymous_id()
        question_id = survey['question_ids'][0]
        first = submit_response(survey['assessment_id'], question_id, token, 2)
        second = submit_response(survey['assessment_id'], question_id, token, 5)

        assert first == second
        rows = _responses(survey['assessment_id'])
        assert len(rows) == 1
        assert rows[0]['value'] == '5'

    def test_unknown_assessment(self):
        with pytest.raises(NotFound):
            submit_response('assess-missing', 'q-missing', new_anonymous_id(), 3)

    def test_draft_assessment_is_not_found(self, survey):
        scope = survey['tenant'].scope()
        draft_id = scope.create_assessment(survey['questionnaire_id'], 'Not started')
        with pytest.raises(NotFound):
            submit_response(draft_id, survey['question_ids'][0], new_anonymous_id(), 3)

    def test_completed_assessment_is_not_found(self, survey):
        survey['tenant'].scope().set_assessment_status(survey['assessment_id'], 'completed')
        with pytest.raises(NotFound):
            submit_response(survey['assessment_id'], survey['question_ids'][0], new_anonymous_id(), 3)

    def test_question_from_another_questionnaire(self, survey, other_survey):
        with pytest.raises(InvalidSubmission):
            submit_response(survey['assessment_id'], other_survey['question_ids'][0],
                            new_anonymous_id(), 3)

    def test_matching_department_is_accepted(self, survey):
        submit_response(survey['assessment_id'], survey['question_ids'][0], new_anonymous_id(), 3,
                        department_id=survey['department_id'])
        assert _responses(survey['assessment_id'])[0]['department_id'] == survey['department_id']

    def test_other_department_is_rejected(self, survey, other_survey):
        with pytest.raises(InvalidSubmission):
            submit_response(survey['assessment_id'], survey['question_ids'][0], new_anonymous_id(), 3,
                            department_id=other_survey['department_id'])
        assert _responses(survey['assessment_id']) == []

    def test_department_of_same_org_when_untargeted(self, survey):
        scope = survey['tenant'].scope()
        assessment_id = scope.create_assessment(survey['questionnaire_id'], 'Org wide')
        scope.set_assessment_status(assessment_id, 'active')
        other_department = scope.create_department('Logistics')

        submit_response(assessment_id, survey['question_ids'][0], new_anonymous_id(), 3,
                        department_id=other_department)
        assert _responses(assessment_id)[0]['department_id'] == other_department


class TestSubmitAnswers:
    def test_whole_session(self, survey):
        token = new_anonymous_id()
        answers = {question_id: 3 for question_id in survey['question_ids']}
        assert submit_answers(survey['assessment_id'], token, answers) == Ack()

        rows = _responses(survey['assessment_id'])
        assert len(rows) == len(survey['question_ids'])
        assert {row['anonymous_id'] for row in rows} == {token}

    def test_list_form(self, survey):
        answers = [{'question_id': q, 'value': '2'} for q in survey['question_ids']]
        submit_answers(survey['assessment_id'], new_anonymous_id(), answers)
        assert len(_responses(survey['assessment_id'])) == len(survey['question_ids'])

    def test_one_bad_answer_stores_nothing(self, survey):
        first, second = survey['question_ids'][:2]
        with pytest.raises(InvalidSubmission):
            submit_answers(survey['assessment_id'], new_anonymous_id(), {first: 3, second: 9})
        assert _responses(survey['assessment_id']) == []

    @pytest.mark.parametrize('answers', [{}, [], ['not a dict'], [{'value': 3}]])
    def test_malformed_answers(self, survey, answers):
        with pytest.raises(InvalidSubmission):
            submit_answers(survey['assessment_id'], new_anonymous_id(), answers)


class TestPublicQuestions:
    def test_lists_questions_in_order(self, survey):
        result = list_public_questions(survey['assessment_id'])
        assert result['assessment_id'] == survey['assessment_id']
        assert [q['id'] for q in result['questions']] == survey['question_ids']

    def test_exposes_no_tenant_data(self, survey):
        result = list_public_questions(survey['assessment_id'])
        assert 'organization_id' not in result
        for question in result['questions']:
            assert 'questionnaire_id' not in question

    def test_draft_is_not_found(self, survey):
        draft_id = survey['tenant'].scope().create_assessment(survey['questionnaire_id'], 'Draft')
        with pytest.raises(NotFound):
            list_public_questions(draft_id)
