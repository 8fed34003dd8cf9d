"""Provider health checks: one short streamed ping per provider an advisor will use."""

import asyncio
import logging
import time
from dataclasses import dataclass

from advisor_council.models import Advisor
from advisor_council.providers.base import AIProvider

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_PING_MAX_TOKENS = 16
_TIMEOUT_SEC = 15.0


@dataclass(frozen=True)
class HealthResult:
    ok: bool
    error: str = ""
    latency_sec: float = 0.0


def providers_in_use(advisors: list[Advisor], mode: str, default_provider: str) -> set[str]:
    """Provider names a turn would open streams on."""
    if mode == "single":
        return {default_provider}
    return {a.provider or default_provider for a in advisors if a.active}


async def _check_one(name: str, provider: AIProvider) -> tuple[str, HealthResult]:
    start = time.monotonic()
    try:
        await asyncio.wait_for(
            provider.generate(_PING_PROMPT, max_tokens=_PING_MAX_TOKENS),
            timeout=_TIMEOUT_SEC,
        )
    except Exception as exc:
        logger.debug("Health check failed for %s: %r", name, exc)
        return name, HealthResult(ok=False, error=str(exc) or type(exc).__name__)
    latency = time.monotonic() - start
    logger.debug("Health check ok for %s in %.2fs", name, latency)
    return name, HealthResult(ok=True, latency_sec=latency)


async def run_health_checks(providers: dict[str, AIProvider]) -> dict[str, HealthResult]:
    """Ping all providers in parallel.

    Returns:
        Dict mapping provider name -> HealthResult. ``error`` is "" when ok.
    """
    results = await asyncio.gather(*(_check_one(n, p) for n, p in providers.items()))
    return dict(results)
