"""
Tortoise ORM setup for the scheduling store
"""

import logging
from typing import Any, Dict

from tortoise import Tortoise, connections

logger = logging.getLogger(__name__)

MODEL_MODULES = ["scheduling.models"]


def build_tortoise_config(database_url: str) -> Dict[str, Any]:
    return {
        "connections": {"default": database_url},
        "apps": {
            "models": {
                "models": MODEL_MODULES,
                "default_connection": "default",
            }
        },
    }


async def init_database(database_url: str, generate_schemas: bool = True):
    """Open the scheduling database and create missing tables"""
    await Tortoise.init(config=build_tortoise_config(database_url))
    if generate_schemas:
        await Tortoise.generate_schemas(safe=True)
    logger.info(f"Scheduling database ready ({database_url.split('://')[0]})")


async def close_database():
    await connections.close_all()
    logger.info("Scheduling database closed")
