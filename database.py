"""
Database helpers

Connects to MongoDB using DATABASE_URL / DATABASE_NAME from the environment
(a local .env file is honoured). `db` stays None when the connection is not
configured, which the /test endpoint reports.
"""

import os
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def _collection(name: str, database: Optional[Database] = None):
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME")
    return target[name]


def create_document(collection_name: str, data, database: Optional[Database] = None) -> str:
    """Insert a document with timestamps and return its id as a string."""
    if hasattr(data, "model_dump"):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = _collection(collection_name, database).insert_one(data_dict)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["order"].create_index("order_id", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    database["order_item"].create_index("order_ref")
    database["cart_item"].create_index([("user_id", ASCENDING), ("gem_id", ASCENDING)], unique=True)
    database["gem"].create_index("category")
    database["gem"].create_index("price")
    database["gem"].create_index("availability")
