# Overview: Interfaces to services outside the ledger (catalog, event transport).

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app


@dataclass(frozen=True)
class CatalogEntry:
    product_ref: str
    name: str
    sku: str | None = None


class CatalogLookup:
    """Resolves a product_ref to display data. Implemented by the catalog service client."""

    def resolve(self, product_ref: str) -> CatalogEntry | None:
        raise NotImplementedError


class StaticCatalog(CatalogLookup):
    """
    Catalog backed by a plain mapping:
        {"P-1": {"name": "Widget", "sku": "WID-1"}}
    """

    def __init__(self, entries: dict | None = None):
        self._entries = dict(entries or {})

    def resolve(self, product_ref: str) -> CatalogEntry | None:
        entry = self._entries.get(product_ref)
        if entry is None:
            return None
        return CatalogEntry(product_ref=product_ref, name=entry.get("name") or product_ref, sku=entry.get("sku"))


class EventPublisher:
    """
    Fire-and-forget transport for ledger events.

    publish() receives the event dict produced by LedgerEvent.to_dict(). It may
    raise; the caller logs the failure and leaves the event pending for replay.
    """

    def publish(self, event: dict) -> None:
        raise NotImplementedError


class LoggingEventPublisher(EventPublisher):
    """Default publisher: writes events to the application log."""

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger

    def publish(self, event: dict) -> None:
        logger = self._logger or current_app.logger
        logger.info("ledger event %s key=%s", event["event_type"], event["idempotency_key"])


class RecordingEventPublisher(EventPublisher):
    """Keeps published events in memory (tests, local tooling)."""

    def __init__(self):
        self.events: list[dict] = []

    def publish(self, event: dict) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["event_type"] == event_type]


def get_catalog() -> CatalogLookup:
    catalog = current_app.extensions.get("ledger_catalog")
    if catalog is None:
        catalog = StaticCatalog(current_app.config.get("LEDGER_CATALOG") or {})
        current_app.extensions["ledger_catalog"] = catalog
    return catalog


def get_event_publisher() -> EventPublisher:
    publisher = current_app.extensions.get("ledger_event_publisher")
    if publisher is None:
        publisher = current_app.config.get("LEDGER_EVENT_PUBLISHER") or LoggingEventPublisher()
        current_app.extensions["ledger_event_publisher"] = publisher
    return publisher
