import pymongo
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from ..config.settings import MongoSettings


class MongoConnectionError(Exception):
    """MongoDB is unreachable or the configured database/collection is missing."""
    pass


def get_client(settings: MongoSettings) -> pymongo.MongoClient:
    """Create a MongoClient from settings. Caller is responsible for closing it.

    Looking up `pymongo.MongoClient` at call time allows tests to monkeypatch
    it (e.g., with mongomock) and have our code pick it up.
    """
    return pymongo.MongoClient(
        settings.uri,
        connectTimeoutMS=settings.connect_timeout * 1000,
        serverSelectionTimeoutMS=settings.server_selection_timeout * 1000,
    )


def health(client: pymongo.MongoClient) -> None:
    """Ping the primary.

    Raises:
        MongoConnectionError: If the ping fails
    """
    try:
        client.admin.command("ping")
    except PyMongoError as e:
        raise MongoConnectionError(f"Failed to ping mongodb: {e}") from e


def fetch_database(client: pymongo.MongoClient, name: str) -> Database:
    """Return the named database, failing if the server does not list it.

    Change streams on a database that does not exist yet would silently wait
    forever, so a typo in the configuration is reported up front.
    """
    try:
        names = client.list_database_names()
    except PyMongoError as e:
        raise MongoConnectionError(f"Failed to list databases: {e}") from e

    if name not in names:
        raise MongoConnectionError(f"The specified mongodb database does not exist: {name}")
    return client[name]


def fetch_collection(db: Database, name: str) -> Collection:
    """Return the named collection, failing if the database does not list it."""
    try:
        names = db.list_collection_names()
    except PyMongoError as e:
        raise MongoConnectionError(f"Failed to list collections: {e}") from e

    if name not in names:
        raise MongoConnectionError(f"The specified mongodb collection does not exist: {name}")
    return db[name]
