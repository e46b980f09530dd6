"""Deterministic plan identifiers derived from source revisions."""

HASH_LENGTH = 10


def _legacy_plan_id(revision: str) -> str:
    """Old `branch/hash` revisions, or a bare hash."""
    parts = revision.split('/')
    if len(parts) != 2:
        return 'plan-' + revision[:HASH_LENGTH]
    branch, digest = parts
    return f'plan-{branch}-{digest[:HASH_LENGTH]}'


def get_plan_id(revision: str) -> str:
    """Map `branch@algo:hash` (or a legacy revision) to `plan-<branch>-<hash[:10]>`.

    The same revision always yields the same id, so retries of a pass
    never mint a second plan for unchanged source.
    """
    parts = revision.split('@')
    if len(parts) != 2:
        return _legacy_plan_id(revision)
    branch, checksum = parts
    digest = checksum.split(':', 1)[1] if ':' in checksum else checksum
    return f'plan-{branch}-{digest[:HASH_LENGTH]}'


def get_approve_message(plan_id: str, message: str) -> str:
    return f'{message}: set approvePlan: "{plan_id}" to approve this plan.'


def approves(approve_plan: str, pending_plan: str) -> bool:
    """Exact match or a left-anchored prefix of the pending id approves it."""
    if not approve_plan or not pending_plan:
        return False
    return pending_plan == approve_plan or pending_plan.startswith(approve_plan)
