from __future__ import annotations

import json

import pytest

from dealflow import ui_state
from dealflow.ui_state import MemoryStorage

MINUTE_MS = 60 * 1000


@pytest.fixture()
def storage() -> MemoryStorage:
    return MemoryStorage()


class TestScrollPosition:
    def test_round_trip_within_window(self, storage):
        ui_state.save_scroll_position(storage, "pipeline", 420, now_ms=0)
        assert ui_state.get_scroll_position(storage, "pipeline", now_ms=29 * MINUTE_MS) == 420
        # a plain read leaves the entry in place
        assert storage.get_item("lighthouse_scroll_pipeline") is not None

    def test_expired_entry_absent_and_removed(self, storage):
        ui_state.save_scroll_position(storage, "pipeline", 420, now_ms=0)
        assert ui_state.get_scroll_position(storage, "pipeline", now_ms=31 * MINUTE_MS) is None
        assert storage.get_item("lighthouse_scroll_pipeline") is None

    def test_corrupt_entry_removed(self, storage):
        storage.set_item("lighthouse_scroll_pipeline", "{not json")
        assert ui_state.get_scroll_position(storage, "pipeline") is None
        assert storage.get_item("lighthouse_scroll_pipeline") is None

    def test_missing_fields_treated_as_corrupt(self, storage):
        storage.set_item("lighthouse_scroll_pipeline", json.dumps({"y": 10}))
        assert ui_state.get_scroll_position(storage, "pipeline") is None
        assert storage.get_item("lighthouse_scroll_pipeline") is None

    def test_restore_consumes(self, storage):
        ui_state.save_scroll_position(storage, "table", 99.5)
        assert ui_state.restore_scroll_position(storage, "table") == 99.5
        assert ui_state.restore_scroll_position(storage, "table") is None

    def test_custom_expiry(self, storage):
        ui_state.save_scroll_position(storage, "t", 1, now_ms=0)
        assert ui_state.get_scroll_position(storage, "t", now_ms=6 * MINUTE_MS, expiry_minutes=5) is None


class TestViewMode:
    def test_save_and_get(self, storage):
        ui_state.save_view_mode(storage, "founders-kanban")
        assert ui_state.get_view_mode(storage) == "founders-kanban"
        ui_state.clear_view_mode(storage)
        assert ui_state.get_view_mode(storage) is None

    def test_unknown_mode_rejected(self, storage):
        with pytest.raises(ValueError, match="Invalid view mode"):
            ui_state.save_view_mode(storage, "grid")

    def test_tampered_value_reads_as_absent(self, storage):
        storage.set_item("lighthouse_viewMode", "grid")
        assert ui_state.get_view_mode(storage) is None


class TestBackTarget:
    def test_dashboard_uses_saved_view(self, storage):
        assert ui_state.back_target("dashboard", storage) == {"href": "/", "label": "Back to Pipeline"}
        ui_state.save_view_mode(storage, "table")
        assert ui_state.back_target("dashboard", storage)["href"] == "/?view=table"

    def test_fixed_targets(self, storage):
        assert ui_state.back_target("portfolio", storage) == {"href": "/portfolio", "label": "Back to Portfolio"}
        assert ui_state.back_target("founders", storage) == {
            "href": "/?view=founders-table", "label": "Back to Founders",
        }

    def test_custom_label(self, storage):
        assert ui_state.back_target("portfolio", storage, "Return")["label"] == "Return"

    def test_unknown_target(self, storage):
        with pytest.raises(ValueError):
            ui_state.back_target("settings", storage)


class TestBreadcrumbs:
    def test_last_item_never_linked(self):
        crumbs = ui_state.build_breadcrumbs([
            {"label": "Pipeline", "href": "/"},
            {"label": "Acme", "href": "/startups/1"},
        ])
        assert crumbs == [
            {"label": "Pipeline", "href": "/", "current": False},
            {"label": "Acme", "href": None, "current": True},
        ]

    def test_home_prefix(self):
        crumbs = ui_state.build_breadcrumbs([{"label": "Acme"}], show_home=True)
        assert crumbs[0] == {"label": "Home", "href": "/", "current": False}
        assert crumbs[-1]["current"]

    def test_startup_trail_follows_saved_view(self, storage):
        ui_state.save_view_mode(storage, "kanban")
        crumbs = ui_state.startup_breadcrumbs("Acme", None, storage)
        assert [c["label"] for c in crumbs] == ["Home", "Pipeline", "Acme"]
        assert crumbs[1]["href"] == "/?view=kanban"

    def test_startup_trail_from_portfolio(self, storage):
        crumbs = ui_state.startup_breadcrumbs("Acme", "portfolio", storage)
        assert crumbs[1] == {"label": "Portfolio", "href": "/portfolio", "current": False}


class TestRegistry:
    def test_storage_partitioned_by_session(self):
        registry = ui_state.SessionStorageRegistry()
        sid, a = registry.create()
        ui_state.save_view_mode(a, "table")
        assert registry.get(sid) is a
        _, b = registry.create()
        assert ui_state.get_view_mode(b) is None

    def test_unknown_ids_are_not_created(self):
        registry = ui_state.SessionStorageRegistry()
        assert registry.get("made-up") is None
        assert registry.get(None) is None
        assert len(registry) == 0

    def test_idle_sessions_expire(self, monkeypatch):
        clock = [1000.0]
        monkeypatch.setattr(ui_state.time, "monotonic", lambda: clock[0])
        registry = ui_state.SessionStorageRegistry(ttl_seconds=60)
        sid, _ = registry.create()
        clock[0] += 61
        assert registry.get(sid) is None
        assert len(registry) == 0

    def test_least_recently_used_evicted(self):
        registry = ui_state.SessionStorageRegistry(max_sessions=2)
        first, _ = registry.create()
        second, _ = registry.create()
        registry.get(first)
        registry.create()
        assert len(registry) == 2
        assert registry.get(second) is None
        assert registry.get(first) is not None


class TestSessionView:
    def test_reads_do_not_create(self):
        registry = ui_state.SessionStorageRegistry()
        issued = []
        view = ui_state.SessionView(registry, "forged", issued.append)
        assert ui_state.get_view_mode(view) is None
        ui_state.clear_view_mode(view)
        assert ui_state.back_target("dashboard", view)["href"] == "/"
        assert len(registry) == 0 and issued == []

    def test_first_write_issues_new_session(self):
        registry = ui_state.SessionStorageRegistry()
        issued = []
        view = ui_state.SessionView(registry, "forged", issued.append)
        ui_state.save_view_mode(view, "kanban")
        assert len(issued) == 1 and issued[0] != "forged"
        assert view.session_id == issued[0]
        assert ui_state.get_view_mode(registry.get(issued[0])) == "kanban"

        again = ui_state.SessionView(registry, issued[0], issued.append)
        ui_state.save_scroll_position(again, "pipeline", 10)
        assert len(registry) == 1 and len(issued) == 1
