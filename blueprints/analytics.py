"""
Analytics blueprint - suppressed aggregates for an assessment.

Routes:
- GET /api/analytics/assessments/<id>/aggregate - Bucketed statistics
- GET /api/analytics/assessments/<id>/summary - Participation summary
- GET /api/analytics/assessments/<id>/responses - Individual answers (threshold-gated)
"""

from flask import Blueprint, jsonify, request, g, current_app

from aggregation import aggregate, summarize_assessment, AggregationScope
from auth_helpers import principal_required
from config import BUCKET_TYPES
from tenant_store import TenantScope

analytics_bp = Blueprint('analytics', __name__, url_prefix='/api/analytics')


@analytics_bp.route('/assessments/<assessment_id>/aggregate', methods=['GET'])
@principal_required
def assessment_aggregate(assessment_id):
    """
    Query params:
        - group_by: assessment, department, category or question (default assessment)
        - department_id: Narrow to one department
        - category: Narrow to one risk category

    Returns:
        {"data": [...], "meta": {"group_by": "..."}}
        Suppressed buckets carry sample_count, remaining and message only.
    """
    group_by = request.args.get('group_by', 'assessment')
    if group_by not in BUCKET_TYPES:
        return jsonify({'error': f"group_by must be one of {', '.join(BUCKET_TYPES)}",
                        'code': 'VALIDATION_ERROR'}), 400

    scope = AggregationScope(
        assessment_id=assessment_id,
        department_id=request.args.get('department_id') or None,
        category=request.args.get('category') or None,
    )
    statistics = aggregate(g.principal, scope, group_by,
                           timeout=current_app.config.get('AGGREGATION_TIMEOUT'))
    return jsonify({
        'data': [statistic.to_dict() for statistic in statistics],
        'meta': {'group_by': group_by},
    })


@analytics_bp.route('/assessments/<assessment_id>/summary', methods=['GET'])
@principal_required
def assessment_summary(assessment_id):
    return jsonify(summarize_assessment(g.principal, assessment_id))


@analytics_bp.route('/assessments/<assessment_id>/responses', methods=['GET'])
@principal_required
def assessment_responses(assessment_id):
    return jsonify(TenantScope(g.principal).detailed_responses(assessment_id))
