from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Dict, Optional, TypeVar

from app.errors import SupplierUnavailable
from app.utils import now_utc

T = TypeVar("T")


@dataclass
class SupplierContext:
    operation: str
    transaction_identifier: Optional[str] = None
    timeout_ms: int = 30000
    deadline_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)


async def run_with_deadline(coro: Awaitable[T], ctx: SupplierContext) -> T:
    """Run a supplier coroutine with a hard deadline.

    - Uses ctx.deadline_at if set; otherwise initializes it from timeout_ms.
    - Maps asyncio.TimeoutError to SupplierUnavailable(code="supplier_timeout").
    """

    if ctx.deadline_at is None:
        ctx.deadline_at = now_utc() + timedelta(milliseconds=ctx.timeout_ms)

    remaining = (ctx.deadline_at - now_utc()).total_seconds()
    if remaining <= 0:
        if asyncio.iscoroutine(coro):
            coro.close()
        raise SupplierUnavailable(
            code="supplier_timeout",
            message="Supplier deadline exceeded before execution",
            details={"operation": ctx.operation},
        )

    try:
        return await asyncio.wait_for(coro, timeout=remaining)
    except asyncio.TimeoutError:
        raise SupplierUnavailable(
            code="supplier_timeout",
            message="Hotel supplier timed out",
            details={"operation": ctx.operation, "timeout_ms": ctx.timeout_ms},
        )
