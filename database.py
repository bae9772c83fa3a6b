"""
MongoDB access for the Grocery Storefront API.

The client is created from DATABASE_URL / DATABASE_NAME. When either is
missing `db` stays None and routes that need storage answer 503.
"""
import os
from datetime import datetime, timezone
from typing import Any, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import MongoClient

from errors import NotFoundError

load_dotenv()

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(
        database_url,
        maxPoolSize=10,
        minPoolSize=2,
        socketTimeoutMS=45000,
        serverSelectionTimeoutMS=10000,
        retryWrites=True,
        retryReads=True,
    )
    db = _client[database_name]


def get_db():
    if db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: str, what: str = "Resource") -> ObjectId:
    """Parse a path/body id; malformed ids are reported as missing resources."""
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{what} not found")


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude_none=True)
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def serialize_doc(doc: Any):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
        elif isinstance(v, datetime):
            doc[k] = v.isoformat()
        elif isinstance(v, dict):
            doc[k] = serialize_doc(v)
        elif isinstance(v, list):
            doc[k] = [serialize_doc(i) if isinstance(i, dict) else i for i in v]
    return doc
