"""OpenSearch result store – index templates, rollover, and document writes.

Schema setup is create-if-absent everywhere: existing templates, policies and
aliases are assumed compatible and never overwritten, and "already exists"
answers from a concurrent run are accepted. Document writes are best-effort:
each one gets a few attempts and is dropped with an error log after that.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from opensearchpy import OpenSearch
from opensearchpy.exceptions import NotFoundError, OpenSearchException, TransportError

from .config import StoreConfig
from .models import ResultDocument, SummaryDocument

log = logging.getLogger(__name__)

WRITE_ATTEMPTS = 3


class IndexRejected(Exception):
    """The store answered, but not with a "created" acknowledgment."""


# ---------------------------------------------------------------------------
# Mappings
# ---------------------------------------------------------------------------

_RUN_METADATA_PROPERTIES: dict[str, Any] = {
    "spec": {"type": "keyword"},
    "src": {"type": "keyword"},
    "scope": {"type": "keyword"},
    "ref": {"type": "keyword"},
    "platform": {"type": "keyword"},
    "with-security": {"type": "boolean"},
    "timestamp": {"type": "date"},
    "version": {"type": "object", "dynamic": True},
}

_RESULT_PROPERTIES: dict[str, Any] = {
    "duration": {"type": "unsigned_long"},
    "state": {"type": "keyword"},
    "error": {"type": "text"},
    "title": {
        "type": "text",
        "fields": {"keyword": {"type": "keyword", "ignore_above": 256}},
    },
}

_VERSION_AS_KEYWORD = [
    {"versions": {"path_match": "version.*", "mapping": {"type": "keyword"}}}
]

SUMMARY_MAPPINGS: dict[str, Any] = {
    "dynamic_templates": _VERSION_AS_KEYWORD,
    "properties": {
        **_RUN_METADATA_PROPERTIES,
        "count": {
            "properties": {
                "failed": {"type": "short"},
                "passed": {"type": "short"},
                "pending": {"type": "short"},
                "skipped": {"type": "short"},
            }
        },
        "results": {"properties": _RESULT_PROPERTIES},
    },
}

RESULT_MAPPINGS: dict[str, Any] = {
    "dynamic_templates": _VERSION_AS_KEYWORD,
    "properties": {**_RUN_METADATA_PROPERTIES, **_RESULT_PROPERTIES},
}


def get_client(cfg: StoreConfig) -> OpenSearch:
    auth = (cfg.username, cfg.password) if cfg.username else None
    return OpenSearch(
        hosts=[cfg.endpoint],
        http_auth=auth,
        http_compress=True,
        verify_certs=cfg.verify_certs,
        ssl_show_warn=cfg.verify_certs,
    )


def _already_exists(exc: TransportError) -> bool:
    """409, or a 400 whose reason says the resource already exists.

    Composable templates put with ``create=true`` answer the latter.
    """
    if exc.status_code == 409 or "already_exists" in str(exc.error):
        return True
    info = exc.info if isinstance(exc.info, dict) else {}
    error = info.get("error")
    reason = error.get("reason", "") if isinstance(error, dict) else str(error or "")
    return "already exists" in str(reason)


class ResultSink:
    def __init__(
        self,
        client: OpenSearch,
        *,
        results_index: str,
        summaries_index: str,
        replicas: int = 2,
        shards: int = 5,
        rollover_min_size: str = "30gb",
        rollover_min_age: str = "30d",
        attempts: int = WRITE_ATTEMPTS,
    ) -> None:
        if not results_index.strip() or not summaries_index.strip():
            raise ValueError("Invalid index name")
        self.client = client
        self.results_index = results_index
        self.summaries_index = summaries_index
        self.replicas = replicas
        self.shards = shards
        self.rollover_min_size = rollover_min_size
        self.rollover_min_age = rollover_min_age
        self.attempts = attempts
        self._known_targets: set[str] = set()

    @classmethod
    def from_config(cls, cfg: StoreConfig, client: OpenSearch | None = None) -> "ResultSink":
        return cls(
            client or get_client(cfg),
            results_index=cfg.results_index,
            summaries_index=cfg.summaries_index,
            replicas=cfg.replicas,
            shards=cfg.shards,
            rollover_min_size=cfg.rollover_min_size,
            rollover_min_age=cfg.rollover_min_age,
        )

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    @staticmethod
    def template_name(index: str) -> str:
        return f"{index}-template"

    @staticmethod
    def policy_name(index: str) -> str:
        return f"{index}-rollover"

    @staticmethod
    def first_index(index: str) -> str:
        return f"{index}-000001"

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def ensure_schema(self) -> None:
        """Create templates, rollover policies and write aliases that are missing."""
        for index, mappings in (
            (self.summaries_index, SUMMARY_MAPPINGS),
            (self.results_index, RESULT_MAPPINGS),
        ):
            self.ensure_policy(index)
            self.ensure_template(index, mappings)
            self.ensure_target(index)

    def ensure_template(self, index: str, mappings: dict[str, Any]) -> bool:
        """Returns True if this call created the template."""
        name = self.template_name(index)
        if self.client.indices.exists_index_template(name=name):
            log.debug("Index template %s exists", name)
            return False
        body = {
            "index_patterns": [f"{index}-*"],
            "template": {
                "settings": {
                    "number_of_replicas": str(self.replicas),
                    "number_of_shards": str(self.shards),
                    "plugins.index_state_management.rollover_alias": index,
                },
                "mappings": mappings,
            },
        }
        try:
            self.client.indices.put_index_template(name=name, body=body, create=True)
        except TransportError as exc:
            if _already_exists(exc):
                log.info("Index template %s was created concurrently", name)
                return False
            raise
        log.info("Created index template %s", name)
        return True

    def ensure_policy(self, index: str) -> bool:
        """Returns True if this call created the rollover policy."""
        name = self.policy_name(index)
        path = f"/_plugins/_ism/policies/{name}"
        try:
            self.client.transport.perform_request("GET", path)
            log.debug("Rollover policy %s exists", name)
            return False
        except NotFoundError:
            pass
        body = {
            "policy": {
                "description": f"Rollover for {index}",
                "default_state": "hot",
                "states": [
                    {
                        "name": "hot",
                        "actions": [
                            {
                                "rollover": {
                                    "min_size": self.rollover_min_size,
                                    "min_index_age": self.rollover_min_age,
                                }
                            }
                        ],
                        "transitions": [],
                    }
                ],
                "ism_template": [{"index_patterns": [f"{index}-*"], "priority": 100}],
            }
        }
        try:
            self.client.transport.perform_request("PUT", path, body=body)
        except TransportError as exc:
            if _already_exists(exc):
                log.info("Rollover policy %s was created concurrently", name)
                return False
            raise
        log.info("Created rollover policy %s", name)
        return True

    def ensure_target(self, index: str) -> bool:
        """Make sure *index* resolves to something writable.

        A missing target becomes a write alias over ``<index>-000001``. An
        existing alias or concrete index is used as is.
        """
        if index in self._known_targets:
            return False
        if self.client.indices.exists(index=index):
            self._known_targets.add(index)
            return False
        body = {"aliases": {index: {"is_write_index": True}}}
        try:
            self.client.indices.create(index=self.first_index(index), body=body)
        except TransportError as exc:
            if not _already_exists(exc):
                raise
            log.info("Write alias %s was created concurrently", index)
            self._known_targets.add(index)
            return False
        log.info("Created write alias %s -> %s", index, self.first_index(index))
        self._known_targets.add(index)
        return True

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _index_doc(self, index: str, body: dict[str, Any]) -> str:
        self.ensure_target(index)
        result = self.client.index(index=index, body=body, refresh=True)
        if not isinstance(result, dict) or result.get("result") != "created":
            raise IndexRejected(f"Index into {index} not acknowledged: {result!r}")
        return result.get("_id", "")

    def _write(self, index: str, body: dict[str, Any], kind: str) -> Optional[str]:
        label = f"{kind} {body.get('spec', '')} {body.get('title', '')}".rstrip()
        for attempt in range(1, self.attempts + 1):
            try:
                return self._index_doc(index, body)
            except (OpenSearchException, IndexRejected) as exc:
                log.warning("Failed to index %s (%d/%d): %s", label, attempt, self.attempts, exc)
        log.error("Dropped %s after %d failed attempts", label, self.attempts)
        return None

    def write_summary(self, doc: SummaryDocument) -> Optional[str]:
        return self._write(self.summaries_index, doc.to_dict(), "summary")

    def write_result(self, doc: ResultDocument) -> Optional[str]:
        return self._write(self.results_index, doc.to_dict(), "result")
