import json
import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

load_dotenv()

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient | None = None
db: AsyncIOMotorDatabase | None = None

SCHEMA_DIR = Path(__file__).parent / "schemas"

# MongoDB $jsonSchema doesn't support several standard JSON Schema keywords
_UNSUPPORTED_KEYS = {"format", "examples", "$comment", "default"}


def load_validator(schema_path: Path) -> dict:
    """Read a JSON Schema file and reduce it to what MongoDB's $jsonSchema accepts."""
    with open(schema_path) as f:
        raw = json.load(f)

    # MongoDB uses only the core JSON Schema fields, strip the meta keys
    validator = {
        k: v
        for k, v in raw.items()
        if k not in ("$schema", "$id", "title", "description")
    }

    def _mongo_compat(obj):
        if isinstance(obj, dict):
            for key in list(obj.keys()):
                if key in _UNSUPPORTED_KEYS:
                    obj.pop(key)
            # MongoDB uses "int" / "long" instead of "integer"
            if obj.get("type") == "integer":
                obj["bsonType"] = "int"
                del obj["type"]
            for v in obj.values():
                _mongo_compat(v)
        elif isinstance(obj, list):
            for item in obj:
                _mongo_compat(item)

    _mongo_compat(validator)
    return validator


async def connect_db() -> AsyncIOMotorDatabase:
    global client, db
    mongo_url = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
    client = AsyncIOMotorClient(mongo_url)
    db = client[os.getenv("MONGODB_DB", "study_buddy")]

    validator = load_validator(SCHEMA_DIR / "matching_preferences.schema.json")
    existing = await db.list_collection_names()
    if "matching_preferences" not in existing:
        await db.create_collection(
            "matching_preferences",
            validator={"$jsonSchema": validator},
        )
    else:
        await db.command("collMod", "matching_preferences", validator={"$jsonSchema": validator})

    await db.students.create_index("id", unique=True)
    await db.matching_preferences.create_index("student_id", unique=True)
    await db.learning_progress.create_index([("student_id", 1), ("completed", 1)])
    # One record per unordered pair; match_id is the sorted pair
    await db.study_buddy_matches.create_index("match_id", unique=True)
    await db.study_buddy_matches.create_index([("student_a_id", 1), ("status", 1)])
    await db.study_buddy_matches.create_index([("student_b_id", 1), ("status", 1)])
    await db.study_groups.create_index("id", unique=True)
    await db.study_groups.create_index([("recruiting_status", 1), ("is_public", 1), ("activity_score", -1)])
    # A student has at most one membership row per group, reused on rejoin
    await db.study_group_members.create_index([("group_id", 1), ("student_id", 1)], unique=True)
    await db.study_group_members.create_index([("student_id", 1), ("status", 1)])

    logger.info("Connected to MongoDB database %s", db.name)
    return db


async def close_db() -> None:
    global client
    if client:
        client.close()


def get_db() -> AsyncIOMotorDatabase:
    assert db is not None, "Database not connected. Call connect_db() first."
    return db
