"""Pure mapping from source change events to sink write operations.

CouchDB documents carry revision bookkeeping (`_rev`, `_revisions`,
`_conflicts`, ...) that means nothing to MongoDB. The translator strips it,
writes the identity to the sink's id field and picks the target collection.
It performs no I/O and never guesses: a body it cannot reshape raises
`TranslationError` with the offending event attached.
"""

from __future__ import annotations

from typing import Any

from couchstream.core.config import TranslatorConfig
from couchstream.core.models import ChangeEvent, WriteOp
from couchstream.errors import TranslationError

DESIGN_PREFIX = "_design/"


def is_design_document(event: ChangeEvent) -> bool:
    """Return True if the event is for a CouchDB design document."""
    return event.document_id.startswith(DESIGN_PREFIX)


class Translator:
    def __init__(self, config: TranslatorConfig) -> None:
        self.config = config
        self._strip = frozenset(config.strip_fields)

    def is_replicable(self, event: ChangeEvent) -> bool:
        """Return False for events that should be skipped entirely."""
        return not (self.config.skip_design_documents and is_design_document(event))

    def collection_for(self, body: dict[str, Any] | None) -> str:
        """Resolve the target collection.

        The value of `collection_field` in the body wins when present and a
        non-empty string; otherwise the configured default collection.
        """
        field = self.config.collection_field
        if field and body is not None:
            value = body.get(field)
            if isinstance(value, str) and value:
                return value
        return self.config.default_collection

    def translate(self, event: ChangeEvent) -> WriteOp:
        if event.deleted:
            # tombstones carry no body, so a routed document could be in any collection
            return WriteOp.delete(
                event.document_id,
                collection=None if self.config.collection_field else self.config.default_collection,
                token=event.token,
            )

        body = event.body
        if not isinstance(body, dict):
            raise TranslationError(event, f"body is {type(body).__name__}, expected an object")

        source_id = body.get("_id", event.document_id)
        if source_id != event.document_id:
            raise TranslationError(event, f"body _id {source_id!r} does not match change id")

        bad_keys = sorted(k for k in body if not isinstance(k, str) or k.startswith("$"))
        if bad_keys:
            raise TranslationError(event, f"field names not allowed in the sink: {bad_keys}")

        reshaped: dict[str, Any] = {self.config.id_field: event.document_id}
        for key, value in body.items():
            if key == "_id" or key in self._strip:
                continue
            reshaped[key] = value

        return WriteOp.upsert(
            event.document_id,
            reshaped,
            collection=self.collection_for(body),
            token=event.token,
        )
