"""
Automation rule routes: CRUD, dry run, execution history.
"""

from fastapi import APIRouter, Depends, Query

from ..auth import verify_api_key
from ..schemas import (
    BulkDeleteRulesRequest,
    BulkToggleRulesRequest,
    CreateRuleRequest,
    RuleDryRunMatch,
    RuleDryRunRequest,
    RuleDryRunResponse,
    RuleExecutionResponse,
    RuleResponse,
    RuleStatsResponse,
    UpdateRuleRequest,
)
from ..services import RuleServiceDep

router = APIRouter(
    prefix="/rules",
    tags=["rules"],
    dependencies=[Depends(verify_api_key)]
)


def _dump(items) -> list[dict] | None:
    if items is None:
        return None
    return [item.model_dump(exclude_none=True) for item in items]


# ─────────────────────────────────────────────────────────────
# Rules
# ─────────────────────────────────────────────────────────────

@router.get("")
async def list_rules(
    service: RuleServiceDep,
    enabled_only: bool = False
) -> list[RuleResponse]:
    """List rules, highest priority first."""
    return [RuleResponse.from_db(r) for r in service.list_rules(enabled_only)]


@router.post("")
async def create_rule(request: CreateRuleRequest, service: RuleServiceDep) -> RuleResponse:
    rule = service.create_rule(
        name=request.name,
        conditions=_dump(request.conditions),
        actions=_dump(request.actions),
        trigger_type=request.trigger_type,
        description=request.description,
        priority=request.priority,
        enabled=request.enabled,
    )
    return RuleResponse.from_db(rule)


@router.post("/test")
async def test_rule(request: RuleDryRunRequest, service: RuleServiceDep) -> RuleDryRunResponse:
    """Show which recent articles a definition would match. Nothing is executed."""
    results = service.test_rule(_dump(request.conditions), _dump(request.actions), request.limit)
    return RuleDryRunResponse(
        tested=len(results),
        matched=sum(1 for r in results if r.would_match),
        results=[RuleDryRunMatch.from_result(r) for r in results],
    )


@router.post("/bulk/toggle")
async def bulk_toggle_rules(request: BulkToggleRulesRequest, service: RuleServiceDep) -> dict:
    updated = service.bulk_toggle(request.rule_ids, request.enabled)
    return {"success": True, "updated": updated}


@router.post("/bulk/delete")
async def bulk_delete_rules(request: BulkDeleteRulesRequest, service: RuleServiceDep) -> dict:
    deleted = service.bulk_delete(request.rule_ids)
    return {"success": True, "deleted": deleted}


@router.get("/{rule_id}")
async def get_rule(rule_id: int, service: RuleServiceDep) -> RuleResponse:
    return RuleResponse.from_db(service.get_rule(rule_id))


@router.patch("/{rule_id}")
async def update_rule(
    rule_id: int,
    request: UpdateRuleRequest,
    service: RuleServiceDep
) -> RuleResponse:
    rule = service.update_rule(
        rule_id,
        name=request.name,
        description=request.description,
        enabled=request.enabled,
        trigger_type=request.trigger_type,
        conditions=_dump(request.conditions),
        actions=_dump(request.actions),
        priority=request.priority,
    )
    return RuleResponse.from_db(rule)


@router.delete("/{rule_id}")
async def delete_rule(rule_id: int, service: RuleServiceDep) -> dict:
    service.delete_rule(rule_id)
    return {"success": True}


@router.post("/{rule_id}/toggle")
async def toggle_rule(rule_id: int, service: RuleServiceDep) -> RuleResponse:
    return RuleResponse.from_db(service.toggle_rule(rule_id))


# ─────────────────────────────────────────────────────────────
# History
# ─────────────────────────────────────────────────────────────

@router.get("/{rule_id}/executions")
async def list_executions(
    rule_id: int,
    service: RuleServiceDep,
    limit: int = Query(default=50, ge=1, le=500)
) -> list[RuleExecutionResponse]:
    """Most recent executions of a rule."""
    return [RuleExecutionResponse.from_db(e) for e in service.get_executions(rule_id, limit)]


@router.get("/{rule_id}/stats")
async def rule_stats(rule_id: int, service: RuleServiceDep) -> RuleStatsResponse:
    return RuleStatsResponse(**service.get_stats(rule_id))
