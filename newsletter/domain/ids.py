from __future__ import annotations

import ulid


def new_issue_id() -> str:
    return f"iss_{ulid.new().str}"


def new_task_id() -> str:
    return f"dtk_{ulid.new().str}"
