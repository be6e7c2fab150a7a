"""Lightweight async client for the CouchDB/Cloudant `_changes` API.

This module provides:
- `CouchDBClient`: an httpx-based client with sane timeouts/connection limits
- `parse_change_row`: maps one `_changes` result row into a `ChangeEvent`

It returns `ChangesBatch` records ready for the change feed reader.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from couchstream.core.models import ChangeEvent, ChangesBatch, SequenceToken
from couchstream.errors import SourceError, StaleTokenError, TransientError

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


def seq_to_token(seq: Any) -> SequenceToken:
    """Return a sequence value as an opaque string token.

    CouchDB 1.x emits integers, 2.x+ and Cloudant emit opaque strings.
    """
    if seq is None:
        raise SourceError("change row has no seq")
    return seq if isinstance(seq, str) else str(seq)


def parse_change_row(row: dict[str, Any]) -> ChangeEvent:
    """Convert one `_changes` result row into a ChangeEvent."""
    try:
        doc_id = row["id"]
    except KeyError as e:
        raise SourceError(f"change row without id: {row!r}") from e

    deleted = bool(row.get("deleted", False))
    changes = row.get("changes") or []
    revision = changes[0].get("rev") if changes and isinstance(changes[0], dict) else None

    doc = row.get("doc")
    if isinstance(doc, dict) and doc.get("_deleted"):
        deleted = True
    if deleted:
        body = None
    elif doc is None:
        raise SourceError(f"change for {doc_id!r} has no doc; the feed must use include_docs=true")
    else:
        body = doc
        if revision is None and isinstance(doc, dict):
            revision = doc.get("_rev")

    return ChangeEvent(
        token=seq_to_token(row.get("seq")),
        document_id=doc_id,
        revision=revision,
        body=body,
        deleted=deleted,
    )


class CouchDBClient:
    """Minimal async CouchDB client for one database.

    Parameters
    ----------
    url : str
        Server URL, e.g. ``http://localhost:5984/``.
    database : str
        Database whose change feed is read.
    username, password : str | None
        Optional basic-auth credentials.
    timeout_s : int
        Per-operation timeout in seconds, on top of any long-poll wait.
    """

    def __init__(
        self,
        url: str,
        database: str,
        *,
        username: str | None = None,
        password: str | None = None,
        timeout_s: int = 10,
        max_connections: int = 4,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.database = database
        self.timeout_s = timeout_s
        auth = httpx.BasicAuth(username, password or "") if username else None
        self.client = httpx.AsyncClient(
            base_url=self.url,
            auth=auth,
            timeout=httpx.Timeout(
                connect=timeout_s,
                read=timeout_s,
                write=timeout_s,
                pool=max(30, timeout_s * 3),
            ),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max(1, max_connections // 2),
            ),
            transport=transport,
        )

    @property
    def _db_path(self) -> str:
        return "/" + quote(self.database, safe="")

    async def _get(self, path: str, *, params: dict[str, Any] | None = None, read_timeout: float | None = None) -> httpx.Response:
        timeout = None
        if read_timeout is not None:
            timeout = httpx.Timeout(self.timeout_s, read=read_timeout)
        try:
            if timeout is None:
                return await self.client.get(path, params=params)
            return await self.client.get(path, params=params, timeout=timeout)
        except httpx.TransportError as e:
            raise TransientError(f"GET {path} failed: {type(e).__name__}: {e}") from e

    @staticmethod
    def _error_detail(r: httpx.Response) -> str:
        try:
            data = r.json()
        except ValueError:
            return r.text[:200]
        if isinstance(data, dict):
            return f"{data.get('error')}: {data.get('reason')}"
        return str(data)[:200]

    @staticmethod
    def _json(r: httpx.Response, what: str) -> dict[str, Any]:
        try:
            data = r.json()
        except ValueError as e:
            raise SourceError(f"{what} returned a malformed body: {e}") from e
        if not isinstance(data, dict):
            raise SourceError(f"{what} returned {type(data).__name__}, expected an object")
        return data

    async def fetch_changes(
        self,
        *,
        since: SequenceToken,
        limit: int,
        timeout_ms: int,
    ) -> ChangesBatch:
        """Fetch changes after `since`.

        A positive `timeout_ms` makes a long-poll request that waits for new
        changes; zero returns immediately with whatever is there.
        """
        params: dict[str, Any] = {"since": since, "include_docs": "true", "limit": limit}
        if timeout_ms > 0:
            params.update(feed="longpoll", timeout=timeout_ms)
        else:
            params["feed"] = "normal"
        r = await self._get(
            f"{self._db_path}/_changes",
            params=params,
            read_timeout=self.timeout_s + timeout_ms / 1000.0,
        )
        if r.status_code == 400:
            raise StaleTokenError(since, self._error_detail(r))
        if r.status_code in _RETRYABLE_STATUS:
            raise TransientError(f"_changes returned {r.status_code}: {self._error_detail(r)}")
        if r.status_code >= 400:
            raise SourceError(f"_changes returned {r.status_code}: {self._error_detail(r)}")

        data = self._json(r, "_changes")
        events = tuple(parse_change_row(row) for row in data.get("results", []))
        last_seq = data.get("last_seq")
        last_token = seq_to_token(last_seq) if last_seq is not None else (events[-1].token if events else since)
        return ChangesBatch(events=events, last_token=last_token)

    async def current_token(self) -> SequenceToken:
        """Return the database's current `update_seq`."""
        r = await self._get(self._db_path)
        if r.status_code in _RETRYABLE_STATUS:
            raise TransientError(f"GET {self._db_path} returned {r.status_code}")
        if r.status_code >= 400:
            raise SourceError(f"GET {self._db_path} returned {r.status_code}: {self._error_detail(r)}")
        return seq_to_token(self._json(r, f"GET {self._db_path}").get("update_seq"))

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()
