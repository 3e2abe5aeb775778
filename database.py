"""
MongoDB access for the forum API.

The client is created by ``connect()`` when the application starts and closed
by ``close()`` on shutdown. Route handlers other than the health check receive
the database through the ``get_db`` dependency so tests can swap in another
database.
"""
import logging
import os
from typing import Optional

from fastapi import HTTPException
from pymongo import MongoClient, ReturnDocument
from pymongo.database import Database
from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "forum")

# Collections
COLL_CATEGORIES = "categories"
COLL_TAGS = "tags"
COLL_POSTS = "posts"
COLL_USERS = "users"
COLL_COMMENTS = "comments"
COLL_ANNOUNCEMENTS = "announcements"
COLL_REPORTS = "reports"
COLL_COMMENT_REPORTS = "commentReports"
COLL_PAYMENTS = "payments"
COLL_COUNTERS = "counters"

FORUM_COLLECTIONS = [
    COLL_USERS,
    COLL_POSTS,
    COLL_COMMENTS,
    COLL_CATEGORIES,
    COLL_TAGS,
    COLL_ANNOUNCEMENTS,
    COLL_REPORTS,
    COLL_COMMENT_REPORTS,
    COLL_PAYMENTS,
]

# counter name -> (collection, id field)
SEQUENCES = {
    COLL_USERS: (COLL_USERS, "id"),
    COLL_POSTS: (COLL_POSTS, "id"),
    COLL_COMMENTS: (COLL_COMMENTS, "id"),
    COLL_ANNOUNCEMENTS: (COLL_ANNOUNCEMENTS, "id"),
    COLL_REPORTS: (COLL_REPORTS, "reportId"),
    COLL_COMMENT_REPORTS: (COLL_COMMENT_REPORTS, "reportId"),
}

client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect(url: str = DATABASE_URL, name: str = DATABASE_NAME) -> Database:
    global client, db
    client = MongoClient(url)
    db = client[name]
    logger.info("Connected to MongoDB database %s", name)
    return db


def close():
    global client, db
    if client is not None:
        client.close()
        logger.info("MongoDB connection closed")
    client = None
    db = None


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def ensure_indexes(database: Database) -> list:
    """Create the forum indexes; returns the ones that could not be built.

    A unique index fails on legacy data that already holds duplicate ids or
    emails. That is logged and startup continues; the id counters still keep
    new documents unique.
    """
    indexes = [(COLL_USERS, "email", True)]
    indexes += [(coll, field, True) for coll, field in SEQUENCES.values()]
    indexes.append((COLL_COMMENTS, "postId", False))
    failed = []
    for coll, field, unique in indexes:
        try:
            database[coll].create_index(field, unique=unique)
        except OperationFailure as e:
            logger.warning("Could not create index %s.%s: %s", coll, field, e)
            failed.append((coll, field))
    return failed


def next_sequence(database: Database, name: str) -> int:
    """Atomically allocate the next integer id for ``name``."""
    doc = database[COLL_COUNTERS].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.debug("Allocated %s id %s", name, doc["seq"])
    return doc["seq"]


def seed_counters(database: Database):
    # Raise every counter to the highest id already stored so pre-existing
    # documents are never reissued.
    for name, (coll, field) in SEQUENCES.items():
        top = database[coll].find_one(
            {field: {"$type": "number"}}, sort=[(field, -1)], projection={field: 1}
        )
        current = int(top[field]) if top else 0
        database[COLL_COUNTERS].update_one(
            {"_id": name}, {"$max": {"seq": current}}, upsert=True
        )


def clean(doc: Optional[dict]) -> Optional[dict]:
    """Drop the ObjectId so the document serializes as plain JSON."""
    if not doc:
        return doc
    d = {**doc}
    d.pop("_id", None)
    return d


def create_document(database: Database, collection: str, data) -> dict:
    doc = data.model_dump() if hasattr(data, "model_dump") else dict(data)
    database[collection].insert_one(doc)
    return clean(doc)


def get_documents(database: Database, collection: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> list:
    cursor = database[collection].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [clean(d) for d in cursor]
