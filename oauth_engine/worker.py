"""Background sweep of expired codes and tokens.

RUN:  python -m oauth_engine.worker

Expiry is enforced at read time: an expired code is rejected whether or
not its row still exists.  The sweep only reclaims storage, so a slow or
stopped worker is a disk-usage problem, never a security one.

In Docker/Kubernetes: same image, different command:
  api:     uvicorn oauth_engine.main:app --host 0.0.0.0 --port 8000
  worker:  python -m oauth_engine.worker

The API process runs the same loop in-process when its stores are in
memory (no other process can see them).  Redis-held codes expire by TTL
and report nothing to sweep.
"""

from __future__ import annotations

import asyncio
import logging

from oauth_engine.core.config import SETTINGS
from oauth_engine.core.logging import setup_logging
from oauth_engine.core.metrics import SWEEP_REMOVED
from oauth_engine.repos.base import StoreError
from oauth_engine.repos.factory import Stores, build_stores, prepare_stores

logger = logging.getLogger("oauth_engine.worker")


async def sweep_once(stores: Stores) -> tuple[int, int]:
    """Run one sweep over both stores.  Returns (codes, tokens) removed.

    A failing store is logged and skipped; the other is still swept.
    """
    codes = tokens = 0
    try:
        codes = await stores.codes.sweep_expired()
        SWEEP_REMOVED.labels(kind="codes").inc(codes)
    except StoreError:
        logger.exception("Code sweep failed")
    try:
        tokens = await stores.tokens.sweep_expired()
        SWEEP_REMOVED.labels(kind="tokens").inc(tokens)
    except StoreError:
        logger.exception("Token sweep failed")

    if codes or tokens:
        logger.info("Sweep removed codes=%d tokens=%d", codes, tokens)
    else:
        logger.debug("Sweep found nothing to remove")
    return codes, tokens


async def run_sweeper(
    stores: Stores, interval_sec: float, *, iterations: int | None = None
) -> None:
    """Sweep every ``interval_sec``.  Runs forever unless ``iterations`` is set."""
    logger.info("Sweeper started  interval=%ss", interval_sec)
    done = 0
    while iterations is None or done < iterations:
        await sweep_once(stores)
        done += 1
        if iterations is None or done < iterations:
            await asyncio.sleep(interval_sec)


async def main() -> None:
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    stores = build_stores(SETTINGS)
    try:
        await prepare_stores(stores, SETTINGS)
        await run_sweeper(stores, SETTINGS.sweep_interval_sec)
    finally:
        await stores.aclose()


if __name__ == "__main__":
    asyncio.run(main())
