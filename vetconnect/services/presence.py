"""Presence channel and the online-veterinarian tracker built on it."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]


@dataclass(frozen=True)
class PresenceEvent:
    event: str
    new_presences: List[Payload] = field(default_factory=list)
    left_presences: List[Payload] = field(default_factory=list)
    state: Dict[str, List[Payload]] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "event": self.event,
            "new_presences": self.new_presences,
            "left_presences": self.left_presences,
            "state": self.state,
        }


Listener = Callable[[PresenceEvent], None]


class PresenceChannel:
    """Shared presence state under one channel key.

    Each connected client tracks one payload under its own ``ref``. Changes are
    announced as ``leave``/``join`` events followed by a full ``sync``.
    """

    def __init__(self, key: str) -> None:
        self.key = key
        self._presences: Dict[str, Payload] = {}
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()

    def presence_state(self) -> Dict[str, List[Payload]]:
        with self._lock:
            return {self.key: [dict(payload) for payload in self._presences.values()]}

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)
        listener(PresenceEvent("sync", state=self.presence_state()))

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def track(self, ref: str, payload: Payload) -> None:
        payload = {**payload, "presence_ref": ref}
        with self._lock:
            previous = self._presences.get(ref)
            self._presences[ref] = payload
        if previous is not None:
            self._emit(PresenceEvent("leave", left_presences=[previous]))
        self._emit(PresenceEvent("join", new_presences=[payload]))
        self._emit(PresenceEvent("sync", state=self.presence_state()))

    def untrack(self, ref: str) -> None:
        with self._lock:
            previous = self._presences.pop(ref, None)
        if previous is None:
            return
        self._emit(PresenceEvent("leave", left_presences=[previous]))
        self._emit(PresenceEvent("sync", state=self.presence_state()))

    def _emit(self, event: PresenceEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Presence listener failed on %s", event.event)


@dataclass(frozen=True)
class OnlineVet:
    id: str
    user_id: str
    full_name: str
    online_at: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None


def _to_online_vet(payload: Payload) -> Optional[OnlineVet]:
    if not (payload.get("user_id") and payload.get("id") and payload.get("full_name") and payload.get("online_at")):
        return None
    return OnlineVet(
        id=payload["id"],
        user_id=payload["user_id"],
        full_name=payload["full_name"],
        online_at=payload["online_at"],
        latitude=payload.get("latitude"),
        longitude=payload.get("longitude"),
    )


class VetPresenceTracker:
    """Map of online veterinarians keyed by ``user_id``, fed by a presence channel."""

    def __init__(self, channel: PresenceChannel) -> None:
        self.channel = channel
        self._online: Dict[str, OnlineVet] = {}
        self._lock = threading.Lock()
        channel.subscribe(self.handle_event)

    def handle_event(self, event: PresenceEvent) -> None:
        if event.event == "sync":
            rebuilt: Dict[str, OnlineVet] = {}
            for presences in event.state.values():
                for payload in presences:
                    vet = _to_online_vet(payload)
                    if vet:
                        rebuilt[vet.user_id] = vet
            with self._lock:
                self._online = rebuilt
        elif event.event == "join":
            with self._lock:
                for payload in event.new_presences:
                    vet = _to_online_vet(payload)
                    if vet:
                        self._online[vet.user_id] = vet
        elif event.event == "leave":
            with self._lock:
                for payload in event.left_presences:
                    if payload.get("user_id"):
                        self._online.pop(payload["user_id"], None)

    def track_vet(
        self,
        ref: str,
        *,
        id: str,
        user_id: str,
        full_name: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> OnlineVet:
        payload = {
            "id": id,
            "user_id": user_id,
            "full_name": full_name,
            "latitude": latitude,
            "longitude": longitude,
            "online_at": datetime.now(timezone.utc).isoformat(),
        }
        self.channel.track(ref, payload)
        return _to_online_vet(payload)

    def untrack(self, ref: str) -> None:
        self.channel.untrack(ref)

    def is_vet_online(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._online

    def get_online_vet_data(self, user_id: str) -> Optional[OnlineVet]:
        with self._lock:
            return self._online.get(user_id)

    @property
    def online_vets(self) -> Dict[str, OnlineVet]:
        with self._lock:
            return dict(self._online)
