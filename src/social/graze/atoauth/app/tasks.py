import asyncio
import logging
from typing import NoReturn

from aiohttp import web
import sentry_sdk

from social.graze.atoauth.app.config import StateStoreAppKey

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 60


async def sweep_state_task(app: web.Application) -> NoReturn:
    """
    Drop expired authorization state records every minute.

    Expired records are already unusable; sweeping only reclaims storage for
    attempts that were abandoned before the callback.
    """

    logger.info("Starting state sweep task")

    state_store = app[StateStoreAppKey]
    while True:
        try:
            removed = await state_store.sweep()
            if removed > 0:
                logger.debug("Swept %d expired state records", removed)
        except Exception as e:
            logging.exception("Error sweeping state records")
            sentry_sdk.capture_exception(e)

        await asyncio.sleep(SWEEP_INTERVAL)
