"""Tracking of the connection graph and computation of its updates."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from typing import Optional

MapOfSets = Mapping[str, Iterable[str]]


def _normalise(mapping: MapOfSets) -> dict[str, frozenset[str]]:
    return {name: frozenset(ids) for name, ids in mapping.items()}


def _entries(mapping: Mapping[str, frozenset[str]], key: str, names=None) -> list[dict]:
    return [
        {"name": name, key: sorted(ids)}
        for name, ids in mapping.items()
        if names is None or name in names
    ]


class ConnectionGraph:
    """The latest known publishers, subscribers and service providers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscription_count = 0
        self._published: dict[str, frozenset[str]] = {}
        self._subscribed: dict[str, frozenset[str]] = {}
        self._services: dict[str, frozenset[str]] = {}

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return self._subscription_count

    def subscribe(self) -> bool:
        """Count a new subscriber; True if it is the first one."""
        with self._lock:
            self._subscription_count += 1
            return self._subscription_count == 1

    def unsubscribe(self) -> bool:
        """Remove a subscriber; True if none are left."""
        with self._lock:
            if self._subscription_count == 0:
                raise RuntimeError("Connection graph has no subscribers")
            self._subscription_count -= 1
            return self._subscription_count == 0

    def update(
        self,
        published_topics: MapOfSets,
        subscribed_topics: MapOfSets,
        advertised_services: MapOfSets,
    ) -> Optional[dict]:
        """Store the new graph and return the update message, or None if nothing changed."""
        published = _normalise(published_topics)
        subscribed = _normalise(subscribed_topics)
        services = _normalise(advertised_services)

        with self._lock:
            changed_pub = {n for n, ids in published.items() if self._published.get(n) != ids}
            changed_sub = {n for n, ids in subscribed.items() if self._subscribed.get(n) != ids}
            changed_srv = {n for n, ids in services.items() if self._services.get(n) != ids}
            known_topics = set(self._published) | set(self._subscribed)
            known_services = set(self._services)
            self._published, self._subscribed, self._services = published, subscribed, services

        topic_names = set(published) | set(subscribed)
        removed_topics = sorted(known_topics - topic_names)
        removed_services = sorted(known_services - set(services))

        if not (changed_pub or changed_sub or changed_srv or removed_topics or removed_services):
            return None

        return {
            "op": "connectionGraphUpdate",
            "publishedTopics": _entries(published, "publisherIds", changed_pub),
            "subscribedTopics": _entries(subscribed, "subscriberIds", changed_sub),
            "advertisedServices": _entries(services, "providerIds", changed_srv),
            "removedTopics": removed_topics,
            "removedServices": removed_services,
        }

    def snapshot(self) -> dict:
        """The whole current graph as an update message."""
        with self._lock:
            return {
                "op": "connectionGraphUpdate",
                "publishedTopics": _entries(self._published, "publisherIds"),
                "subscribedTopics": _entries(self._subscribed, "subscriberIds"),
                "advertisedServices": _entries(self._services, "providerIds"),
                "removedTopics": [],
                "removedServices": [],
            }