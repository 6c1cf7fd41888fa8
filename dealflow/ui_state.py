"""Per-browser-session UI state: scroll positions, view mode, back navigation, breadcrumbs.

The dashboard keeps this state in its session storage; the server mirrors it
in a :class:`SessionStorage` keyed by the ``dealflow_session`` cookie.
"""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections import OrderedDict
from typing import Callable, Protocol

log = logging.getLogger(__name__)

SESSION_COOKIE = "dealflow_session"
SCROLL_KEY_PREFIX = "lighthouse_scroll_"
VIEW_MODE_KEY = "lighthouse_viewMode"
DEFAULT_SCROLL_EXPIRY_MINUTES = 30

VIEW_MODES = ("kanban", "table", "founders-kanban", "founders-table")

BACK_LABELS = {
    "dashboard": "Back to Pipeline",
    "portfolio": "Back to Portfolio",
    "founders": "Back to Founders",
}


class SessionStorage(Protocol):
    def get_item(self, key: str) -> str | None: ...
    def set_item(self, key: str, value: str) -> None: ...
    def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """String key/value store for one browser session."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}
        self._lock = threading.Lock()
        self.touched_at = time.monotonic()

    def get_item(self, key: str) -> str | None:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class SessionStorageRegistry:
    """One :class:`MemoryStorage` per browser session id.

    Entries are only created by :meth:`create`. Idle entries expire after
    *ttl_seconds* and the least recently used ones are evicted beyond
    *max_sessions*.
    """

    def __init__(self, ttl_seconds: float = 12 * 3600, max_sessions: int = 10_000):
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self._lock = threading.Lock()
        self._storages: OrderedDict[str, MemoryStorage] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._storages)

    def get(self, session_id: str | None) -> MemoryStorage | None:
        if not session_id:
            return None
        with self._lock:
            self._expire()
            storage = self._storages.get(session_id)
            if storage is not None:
                storage.touched_at = time.monotonic()
                self._storages.move_to_end(session_id)
            return storage

    def create(self) -> tuple[str, MemoryStorage]:
        session_id = uuid.uuid4().hex
        storage = MemoryStorage()
        with self._lock:
            self._expire()
            self._storages[session_id] = storage
            while len(self._storages) > self.max_sessions:
                evicted, _ = self._storages.popitem(last=False)
                log.debug("Evicted UI session %s", evicted)
        return session_id, storage

    def _expire(self) -> None:
        cutoff = time.monotonic() - self.ttl_seconds
        while self._storages:
            session_id, storage = next(iter(self._storages.items()))
            if storage.touched_at >= cutoff:
                break
            del self._storages[session_id]


class SessionView:
    """Request-scoped storage for the session named by a cookie.

    Reads against an unknown session see nothing. The first write to an
    unknown session creates a fresh entry under a new id and reports that id
    through *on_create* so the caller can issue the cookie.
    """

    def __init__(
        self, registry: SessionStorageRegistry, session_id: str | None,
        on_create: Callable[[str], None],
    ) -> None:
        self._registry = registry
        self._session_id = session_id
        self._on_create = on_create

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def get_item(self, key: str) -> str | None:
        storage = self._registry.get(self._session_id)
        return storage.get_item(key) if storage is not None else None

    def set_item(self, key: str, value: str) -> None:
        storage = self._registry.get(self._session_id)
        if storage is None:
            self._session_id, storage = self._registry.create()
            self._on_create(self._session_id)
        storage.set_item(key, value)

    def remove_item(self, key: str) -> None:
        storage = self._registry.get(self._session_id)
        if storage is not None:
            storage.remove_item(key)


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Scroll positions
# ---------------------------------------------------------------------------


def save_scroll_position(storage: SessionStorage, view: str, y: float, now_ms: int | None = None) -> None:
    data = {"y": y, "timestamp": now_ms if now_ms is not None else _now_ms()}
    storage.set_item(f"{SCROLL_KEY_PREFIX}{view}", json.dumps(data))


def get_scroll_position(
    storage: SessionStorage, view: str,
    now_ms: int | None = None, expiry_minutes: float = DEFAULT_SCROLL_EXPIRY_MINUTES,
) -> float | None:
    """Saved offset for *view*, or None. Expired and corrupt entries are removed."""
    key = f"{SCROLL_KEY_PREFIX}{view}"
    stored = storage.get_item(key)
    if not stored:
        return None
    try:
        data = json.loads(stored)
        y = float(data["y"])
        timestamp = float(data["timestamp"])
    except (ValueError, TypeError, KeyError):
        log.debug("Dropping corrupt scroll entry %s", key)
        storage.remove_item(key)
        return None

    now = now_ms if now_ms is not None else _now_ms()
    if now - timestamp > expiry_minutes * 60 * 1000:
        storage.remove_item(key)
        return None
    return y


def restore_scroll_position(
    storage: SessionStorage, view: str,
    now_ms: int | None = None, expiry_minutes: float = DEFAULT_SCROLL_EXPIRY_MINUTES,
) -> float | None:
    """Like :func:`get_scroll_position`, but the entry is consumed."""
    y = get_scroll_position(storage, view, now_ms, expiry_minutes)
    if y is not None:
        storage.remove_item(f"{SCROLL_KEY_PREFIX}{view}")
    return y


# ---------------------------------------------------------------------------
# View mode
# ---------------------------------------------------------------------------


def save_view_mode(storage: SessionStorage, mode: str) -> None:
    if mode not in VIEW_MODES:
        raise ValueError(f"Invalid view mode. Must be one of: {', '.join(VIEW_MODES)}")
    storage.set_item(VIEW_MODE_KEY, mode)


def get_view_mode(storage: SessionStorage) -> str | None:
    mode = storage.get_item(VIEW_MODE_KEY)
    return mode if mode in VIEW_MODES else None


def clear_view_mode(storage: SessionStorage) -> None:
    storage.remove_item(VIEW_MODE_KEY)


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------


def back_target(return_to: str, storage: SessionStorage, label: str | None = None) -> dict:
    """Where a detail page's back button leads, honouring the saved dashboard view."""
    if return_to == "dashboard":
        mode = get_view_mode(storage)
        href = f"/?view={mode}" if mode else "/"
    elif return_to == "portfolio":
        href = "/portfolio"
    elif return_to == "founders":
        href = "/?view=founders-table"
    else:
        raise ValueError(f"Invalid returnTo. Must be one of: {', '.join(BACK_LABELS)}")
    return {"href": href, "label": label or BACK_LABELS[return_to]}


def build_breadcrumbs(items: list[dict], show_home: bool = False) -> list[dict]:
    """Trail of ``{label, href, current}``; the last item is current and never a link."""
    trail = [{"label": "Home", "href": "/"}, *items] if show_home else list(items)
    out = []
    for idx, item in enumerate(trail):
        last = idx == len(trail) - 1
        out.append({
            "label": item["label"],
            "href": None if last else item.get("href"),
            "current": last,
        })
    return out


_ORIGIN_CRUMBS = {
    "dashboard": {"label": "Pipeline", "href": "/"},
    "portfolio": {"label": "Portfolio", "href": "/portfolio"},
    "founders": {"label": "Founders", "href": "/?view=founders-table"},
}


def startup_breadcrumbs(startup_name: str, origin: str | None, storage: SessionStorage) -> list[dict]:
    """Home > origin list > startup, with the pipeline link following the saved view."""
    origin = origin if origin in _ORIGIN_CRUMBS else "dashboard"
    crumb = dict(_ORIGIN_CRUMBS[origin])
    if origin == "dashboard":
        crumb["href"] = back_target("dashboard", storage)["href"]
    return build_breadcrumbs([crumb, {"label": startup_name}], show_home=True)
