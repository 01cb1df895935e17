"""Seed the labourer registry with sample profiles.

    python -m labourmarket.seed [--reset]
"""

import argparse
import asyncio
import logging
from typing import Any, Dict, List

from .config import Settings
from .models import Labourer, new_id
from .store import MongoStore

logger = logging.getLogger(__name__)

SAMPLE_LABOURERS: List[Dict[str, Any]] = [
    {
        "name": "Ramesh Kumar",
        "category": "Plumber",
        "rating": 4.8,
        "jobs_completed": 154,
        "hourly_rate": 250.0,
        "description": "Fixes leaks, installs pipes and bathroom fittings.",
        "location": "Andheri East, Mumbai",
        "skills": ["Pipe Fitting", "Leakage Repair", "Basin Installation"],
        "experience_years": 12,
    },
    {
        "name": "Suresh Patel",
        "category": "Electrician",
        "rating": 4.6,
        "jobs_completed": 98,
        "hourly_rate": 300.0,
        "description": "Home wiring, switchboard repairs and appliance installation.",
        "location": "Borivali, Mumbai",
        "skills": ["Wiring", "Switchboard Repair", "Fan Installation"],
        "experience_years": 8,
    },
    {
        "name": "Anita Devi",
        "category": "Cleaner",
        "rating": 4.9,
        "jobs_completed": 210,
        "hourly_rate": 150.0,
        "description": "Deep cleaning for homes and offices.",
        "location": "Dadar, Mumbai",
        "skills": ["Deep Cleaning", "Kitchen Cleaning", "Sofa Shampooing"],
        "experience_years": 6,
    },
    {
        "name": "Vikram Singh",
        "category": "Carpenter",
        "rating": 4.7,
        "jobs_completed": 120,
        "hourly_rate": 280.0,
        "description": "Custom furniture, repairs and door fitting.",
        "location": "Powai, Mumbai",
        "skills": ["Furniture Repair", "Door Fitting", "Modular Kitchen"],
        "experience_years": 10,
    },
    {
        "name": "Mohan Lal",
        "category": "Painter",
        "rating": 4.5,
        "jobs_completed": 75,
        "hourly_rate": 200.0,
        "description": "Interior and exterior painting, texture work.",
        "location": "Thane, Mumbai",
        "skills": ["Interior Painting", "Texture Painting", "Waterproofing"],
        "experience_years": 7,
    },
]


async def seed_labourers(store, reset: bool = False) -> int:
    """Insert the sample labourers when the registry is empty; returns how many were inserted."""
    if reset:
        removed = await store.delete_labourers()
        logger.info("Removed %d existing labourers", removed)
    elif await store.count_labourers() > 0:
        logger.info("Labourer registry already populated; nothing to seed")
        return 0

    docs = [Labourer(id=new_id(), **data).model_dump() for data in SAMPLE_LABOURERS]
    await store.insert_labourers(docs)
    logger.info("Seeded %d labourers", len(docs))
    return len(docs)


async def _run(reset: bool) -> None:
    settings = Settings.from_env()
    store = MongoStore.from_url(settings.mongo_url, settings.db_name)
    try:
        await store.ensure_indexes()
        await seed_labourers(store, reset=reset)
    finally:
        store.close()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Seed sample labourers")
    parser.add_argument("--reset", action="store_true", help="delete existing labourers first")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    asyncio.run(_run(args.reset))


if __name__ == "__main__":
    main()
