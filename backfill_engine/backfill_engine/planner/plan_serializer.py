"""Deterministic serialization and validation for backfill plans.

Identical plans always serialize to byte-identical JSON (sorted keys, 2-space
indentation), which is what lets the checkpoint store treat a re-plan with
the same inputs as a no-op.
"""

from __future__ import annotations

import json

from pydantic import ValidationError

from backfill_engine.models.plan import BackfillPlan


def serialize_plan(plan: BackfillPlan) -> str:
    """Serialize a plan to a deterministic JSON string."""
    # model_dump_json has no sort_keys, so go through a dict.
    raw = plan.model_dump(mode="json")
    return json.dumps(raw, indent=2, sort_keys=True, ensure_ascii=False)


def deserialize_plan(json_str: str) -> BackfillPlan:
    """Deserialize JSON produced by :func:`serialize_plan`.

    Raises
    ------
    pydantic.ValidationError
        If the JSON does not describe a valid plan (including a broken
        chunk partition).
    """
    return BackfillPlan.model_validate_json(json_str)


def validate_plan_schema(json_str: str) -> list[str]:
    """Validate a JSON string against the plan schema without raising.

    Returns
    -------
    list[str]
        Human-readable problems; empty when the JSON is a valid plan.
    """
    try:
        BackfillPlan.model_validate_json(json_str)
    except ValidationError as exc:
        return [
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" if err.get("loc") else err["msg"]
            for err in exc.errors()
        ]
    except (ValueError, TypeError) as exc:
        return [f"Invalid JSON: {exc}"]

    return []
