"""Clients for the external stores: the CouchDB change feed and the MongoDB sink."""

from couchstream.clients.couchdb import CouchDBClient, parse_change_row
from couchstream.clients.mongo import MongoSinkClient, SinkAuthFailure

__all__ = [
    "CouchDBClient",
    "MongoSinkClient",
    "SinkAuthFailure",
    "parse_change_row",
]
