"""
Route authorization façade.

Each protected operation declares an OperationPolicy (the abstract
permissions it needs). At request time the façade pulls organizationId,
teamId and projectId out of the raw request, runs the access evaluator and
returns its decision. The FastAPI wiring lives in auth.dependencies.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Mapping, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from auth.access import AccessDecision, EntityIds, evaluate_access
from auth.permissions import Permission
from models import User

logger = logging.getLogger(__name__)

# Canonical entity key -> snake_case spelling accepted on the wire
ENTITY_KEYS = {
    "organizationId": "organization_id",
    "teamId": "team_id",
    "projectId": "project_id",
}


@dataclass(frozen=True)
class OperationPolicy:
    """Per-operation authorization configuration."""

    required_permissions: FrozenSet[Permission] = frozenset()

    @classmethod
    def of(cls, *permissions: Permission) -> "OperationPolicy":
        return cls(required_permissions=frozenset(permissions))


@dataclass(frozen=True)
class RequestContext:
    """The raw id sources of an incoming call, in precedence order."""

    path: Mapping[str, Any] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    body: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    async def from_request(cls, request: Request) -> "RequestContext":
        body: Mapping[str, Any] = {}
        raw = await request.body()
        if raw:
            try:
                parsed = json.loads(raw)
            except ValueError:
                logger.debug("Request body is not JSON, ignoring it for id extraction")
            else:
                if isinstance(parsed, dict):
                    body = parsed
        return cls(path=dict(request.path_params), query=dict(request.query_params), body=body)


def _lookup(source: Mapping[str, Any], key: str) -> Optional[Any]:
    value = source.get(key)
    if value is None:
        value = source.get(ENTITY_KEYS[key])
    return value


def extract_entity_id(context: RequestContext, key: str) -> Optional[Any]:
    """
    Find an entity id in the request, path first, then query, then body.

    An empty string does not stop the search; it is only returned when no
    later source holds a non-empty value, so the evaluator can reject it as
    malformed.
    """
    blank_seen = False
    for source in (context.path, context.query, context.body):
        value = _lookup(source, key)
        if value is None:
            continue
        if value == "":
            blank_seen = True
            continue
        return value
    return "" if blank_seen else None


def extract_entity_ids(context: RequestContext) -> EntityIds:
    return EntityIds(
        organization_id=extract_entity_id(context, "organizationId"),
        team_id=extract_entity_id(context, "teamId"),
        project_id=extract_entity_id(context, "projectId"),
    )


def authorize(
    db: Session, user: User, policy: OperationPolicy, context: RequestContext
) -> AccessDecision:
    """
    Decide whether the user may run an operation with the given policy.

    Returns the evaluator's decision. Callers must not run the operation when
    decision.allowed is False.
    """
    entity_ids = extract_entity_ids(context)
    logger.info(
        f"Checking user access: user={user.id}, ids={dict(entity_ids.items())}, "
        f"requires={sorted(p.value for p in policy.required_permissions)}"
    )
    return evaluate_access(db, user, entity_ids, policy.required_permissions)
