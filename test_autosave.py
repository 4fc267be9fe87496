import pytest

from autosave import AutoSaver, FormSaveError, IDLE, PENDING, ERROR
from draft_registry import DraftRegistry
from form_persistence import FormPersistence, MemoryStorage, STORAGE_PREFIX
from form_store import FormStore


class CountingPersistence(FormPersistence):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.saves = []

    def save(self, form_id, data, use_session=False):
        self.saves.append((self.clock() * 1000, data))
        return super().save(form_id, data, use_session)


@pytest.fixture
def store():
    return FormStore()


@pytest.fixture
def local():
    return MemoryStorage()


@pytest.fixture
def persistence(store, local, scheduler):
    return CountingPersistence(
        store,
        session_backend=MemoryStorage(),
        local_backend=local,
        clock=lambda: 1_700_000_000 + scheduler.now / 1000.0,
    )


def make_saver(persistence, scheduler, **options):
    options.setdefault("auto_save_interval", 2000)
    options.setdefault("debounce_delay", 500)
    return AutoSaver(persistence, "assignment-form", scheduler=scheduler, **options)


def test_rapid_updates_produce_one_debounced_save(persistence, scheduler):
    saved = []
    saver = make_saver(persistence, scheduler, form_data={}, on_save=saved.append).mount()

    for i in range(10):
        saver.update({"title": "draft" + "x" * i})
        scheduler.advance(40)

    # last update at t=360ms, debounce deadline at 860ms
    assert saver.state == PENDING
    scheduler.advance(859 - scheduler.now)
    assert persistence.saves == []

    scheduler.advance(1)
    assert len(persistence.saves) == 1
    assert persistence.saves[0][1] == {"title": "draft" + "x" * 9}
    assert saved == [{"title": "draft" + "x" * 9}]
    assert saver.state == IDLE
    assert saver.is_dirty is False

    scheduler.advance(10_000)
    assert len(persistence.saves) == 1


def test_interval_saves_when_debounce_has_not_fired(persistence, scheduler):
    saver = make_saver(persistence, scheduler, debounce_delay=5000).mount()

    scheduler.advance(100)
    saver.update({"a": 1})
    scheduler.advance(1900)

    assert len(persistence.saves) == 1
    assert persistence.load("assignment-form") == {"a": 1}

    # debounce was cancelled by the interval save
    scheduler.advance(10_000)
    assert len(persistence.saves) == 1


def test_interval_does_not_save_unchanged_data(persistence, scheduler):
    make_saver(persistence, scheduler, form_data={"a": 1}).mount()

    scheduler.advance(10_000)

    assert persistence.saves == []


def test_debounce_wins_when_both_deadlines_are_due(persistence, scheduler):
    saver = make_saver(persistence, scheduler, auto_save_interval=1000, debounce_delay=500).mount()

    scheduler.advance(500)
    saver.update({"a": 1})
    # debounce and interval both due at t=1000
    scheduler.advance(500)

    assert len(persistence.saves) == 1
    scheduler.advance(999)
    assert len(persistence.saves) == 1


def test_update_back_to_saved_state_cancels_pending_save(persistence, scheduler, store):
    saver = make_saver(persistence, scheduler, form_data={"a": 1}).mount()

    saver.update({"a": 2})
    assert store.is_dirty("assignment-form") is True
    saver.update({"a": 1})

    assert saver.state == IDLE
    assert store.is_dirty("assignment-form") is False
    scheduler.advance(5000)
    assert persistence.saves == []


def test_mount_restores_saved_data_deferred(persistence, scheduler):
    persistence.save("assignment-form", {"title": "saved"})
    persistence.saves.clear()
    loaded = []

    saver = make_saver(persistence, scheduler, form_data={}, on_load=loaded.append)
    saver.mount()

    assert loaded == []
    scheduler.advance(0)
    assert loaded == [{"title": "saved"}]

    # restored data is the snapshot, so re-sending it is not a change
    saver.update({"title": "saved"})
    scheduler.advance(5000)
    assert persistence.saves == []


def test_unmount_cancels_pending_save_and_unregisters(persistence, scheduler, store):
    saver = make_saver(persistence, scheduler).mount()
    assert store.is_registered("assignment-form") is True

    saver.update({"a": 1})
    saver.unmount()
    scheduler.advance(10_000)

    assert persistence.saves == []
    assert store.is_registered("assignment-form") is False
    assert store.get_autosave_status("assignment-form") is None
    assert saver.status["last_saved"] is None


def test_context_manager_mounts_and_unmounts(persistence, scheduler, store):
    with make_saver(persistence, scheduler) as saver:
        assert saver.is_mounted is True
        assert store.is_registered("assignment-form") is True
    assert saver.is_mounted is False
    assert store.is_registered("assignment-form") is False


def test_save_now_saves_immediately(persistence, scheduler):
    saver = make_saver(persistence, scheduler).mount()
    saver.update({"a": 1})

    assert saver.save_now() is True
    assert len(persistence.saves) == 1
    assert saver.last_saved == persistence.now_ms()

    scheduler.advance(10_000)
    assert len(persistence.saves) == 1


def test_failed_save_reports_error_without_raising(store, scheduler):
    persistence = FormPersistence(store, local_backend=MemoryStorage(enabled=False))
    errors = []
    saver = make_saver(persistence, scheduler, on_error=errors.append).mount()

    saver.update({"a": 1})
    scheduler.advance(500)

    assert saver.state == ERROR
    assert saver.has_error is True
    assert "not available" in saver.error_message
    assert len(errors) == 1
    assert isinstance(errors[0], FormSaveError)
    assert saver.is_dirty is True


def test_failing_on_save_callback_is_reported(persistence, scheduler):
    errors = []

    def on_save(data):
        raise RuntimeError("render failed")

    saver = make_saver(persistence, scheduler, on_save=on_save, on_error=errors.append).mount()
    saver.update({"a": 1})

    assert saver.save_now() is False
    assert saver.state == ERROR
    assert str(errors[0]) == "render failed"


def test_has_changes_false_skips_save(persistence, scheduler):
    saver = make_saver(persistence, scheduler, has_changes=lambda data: bool(data.get("title"))).mount()

    saver.update({"title": ""})
    scheduler.advance(500)

    assert persistence.saves == []
    assert saver.state == IDLE


def test_clear_saved_data_removes_draft(persistence, scheduler, local):
    saver = make_saver(persistence, scheduler).mount()
    saver.update({"a": 1})
    saver.save_now()

    saver.clear_saved_data()

    assert local.get(STORAGE_PREFIX + "assignment-form") is None
    assert persistence.has_data("assignment-form") is False
    assert saver.is_dirty is False


def test_mark_dirty_false_leaves_store_clean(persistence, scheduler, store):
    saver = make_saver(persistence, scheduler, mark_dirty=False).mount()

    saver.update({"a": 1})

    assert saver.state == PENDING
    assert saver.is_dirty is False
    assert store.is_dirty("assignment-form") is False


def test_auto_save_disabled_only_saves_manually(persistence, scheduler):
    saver = make_saver(persistence, scheduler, auto_save=False).mount()

    saver.update({"a": 1})
    scheduler.advance(10_000)
    assert persistence.saves == []

    assert saver.save_now() is True
    assert len(persistence.saves) == 1


def test_use_session_saves_to_session_tier(persistence, scheduler, local):
    saver = make_saver(persistence, scheduler, use_session=True).mount()
    saver.update({"step": 2})
    saver.save_now()

    assert local.get(STORAGE_PREFIX + "assignment-form") is None
    assert persistence.session_tier.backend.get("session_form_data_assignment-form") is not None


def test_interval_stops_while_clean_and_resumes_on_change(persistence, scheduler):
    saver = make_saver(persistence, scheduler, form_data={"a": 1}, debounce_delay=5000).mount()

    scheduler.advance(2000)
    assert [t for t in scheduler.timers if not t.cancelled] == []

    scheduler.advance(60_000)
    saver.update({"a": 2})
    scheduler.advance(2000)
    assert len(persistence.saves) == 1

    scheduler.advance(2000)
    assert [t for t in scheduler.timers if not t.cancelled] == []
    assert len(persistence.saves) == 1


def test_registry_reuses_saver_and_forgets_session(scheduler):
    owners = {}

    def backend_for(owner):
        return owners.setdefault(owner, MemoryStorage())

    registry = DraftRegistry(local_backend_factory=backend_for, scheduler=scheduler)

    first = registry.autosaver("teacher1", "tok", "lesson-plan")
    again = registry.autosaver("teacher1", "tok", "lesson-plan")
    other_owner = registry.autosaver("teacher2", "tok2", "lesson-plan")

    assert first is again
    assert other_owner is not first
    assert registry.store_for("teacher1", "tok").registered_form_ids() == ["lesson-plan"]

    first.update({"topic": "Fractions"})
    scheduler.advance(500)
    assert registry.persistence("teacher1", "tok").load("lesson-plan") == {"topic": "Fractions"}
    assert owners["teacher2"].get(STORAGE_PREFIX + "lesson-plan") is None

    registry.forget_session("teacher1", "tok")
    assert registry.get_autosaver("teacher1", "tok", "lesson-plan") is None
    assert first.is_mounted is False
    assert registry.get_autosaver("teacher2", "tok2", "lesson-plan") is other_owner
    assert registry.close("teacher1", "tok", "lesson-plan") is False
    assert registry.close("teacher2", "tok2", "lesson-plan") is True


def test_registry_session_tier_is_per_login(scheduler):
    registry = DraftRegistry(local_backend_factory=lambda owner: MemoryStorage(), scheduler=scheduler)

    registry.persistence("student1", "tok-a").save("quiz", {"q1": "b"}, use_session=True)
    registry.store_for("student1", "tok-a").clear_all_forms()

    assert registry.persistence("student1", "tok-a").load("quiz", use_session=True) == {"q1": "b"}
    assert registry.persistence("student1", "tok-b").load("quiz", use_session=True) is None


def test_expired_draft_is_not_returned_to_a_later_login(scheduler):
    now = [1_700_000_000.0]
    local = MemoryStorage()
    registry = DraftRegistry(
        local_backend_factory=lambda owner: local, scheduler=scheduler, clock=lambda: now[0],
    )

    assert registry.persistence("teacher1", "tok-a").save("essay", {"body": "draft"}) is True
    registry.forget_session("teacher1", "tok-a")
    now[0] += 25 * 60 * 60

    later = registry.persistence("teacher1", "tok-b")
    assert later.load("essay") is None
    assert later.has_data("essay") is False
    assert local.get(STORAGE_PREFIX + "essay") is None


def test_two_logins_of_one_owner_keep_separate_savers(scheduler):
    registry = DraftRegistry(local_backend_factory=lambda owner: MemoryStorage(), scheduler=scheduler)

    saver_a = registry.autosaver("teacher1", "tok-a", "quiz", use_session=True)
    saver_b = registry.autosaver("teacher1", "tok-b", "quiz", use_session=True)
    assert saver_a is not saver_b

    saver_b.update({"q1": "c"})
    assert saver_b.save_now() is True
    assert registry.persistence("teacher1", "tok-b").load("quiz", use_session=True) == {"q1": "c"}
    assert registry.persistence("teacher1", "tok-a").load("quiz", use_session=True) is None

    registry.forget_session("teacher1", "tok-a")
    assert saver_a.is_mounted is False
    assert saver_b.is_mounted is True
    assert registry.get_autosaver("teacher1", "tok-b", "quiz") is saver_b


def test_idle_logins_are_evicted(scheduler):
    now = [1_700_000_000.0]
    registry = DraftRegistry(
        local_backend_factory=lambda owner: MemoryStorage(), scheduler=scheduler,
        session_idle_ms=60_000, clock=lambda: now[0],
    )
    abandoned = registry.autosaver("student1", "tok-a", "quiz", use_session=True)
    abandoned.update({"q1": "a"})
    abandoned.save_now()

    now[0] += 61
    registry.store_for("student2", "tok-b")

    assert registry.has_session("student1", "tok-a") is False
    assert registry.has_session("student2", "tok-b") is True
    assert abandoned.is_mounted is False
    assert registry.get_autosaver("student1", "tok-a", "quiz") is None
    assert registry.persistence("student1", "tok-a").load("quiz", use_session=True) is None


def test_activity_keeps_a_login_alive(scheduler):
    now = [1_700_000_000.0]
    registry = DraftRegistry(
        local_backend_factory=lambda owner: MemoryStorage(), scheduler=scheduler,
        session_idle_ms=60_000, clock=lambda: now[0],
    )
    registry.autosaver("student1", "tok-a", "quiz")

    for _ in range(3):
        now[0] += 45
        assert registry.get_autosaver("student1", "tok-a", "quiz") is not None

    assert registry.evict_idle() == 0
    assert registry.has_session("student1", "tok-a") is True
