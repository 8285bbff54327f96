"""Тесты хранилища записей, снимков опросов и голосов."""
import dataclasses

from shared.database import MessageStore
from shared.models import PollSnapshot
from tests.conftest import make_message


def test_save_then_get_round_trip(store):
    msg = make_message(type="pollSingle", text="Вопрос?", poll_options=["A", "B"], anonymous=True)
    store.save(msg)
    loaded = store.get(msg.id)
    assert dataclasses.replace(loaded, updated_at=None) == dataclasses.replace(msg, updated_at=None)
    assert loaded.created_at is not None


def test_created_at_is_set_only_on_first_insert(store):
    msg = make_message()
    store.save(msg)
    created = msg.created_at
    msg.text = "Изменено"
    msg.created_at = None
    store.save(msg)
    loaded = store.get(msg.id)
    assert loaded.created_at == created
    assert loaded.text == "Изменено"


def test_get_returns_independent_copy(store):
    msg = make_message(poll_options=["A", "B"])
    store.save(msg)
    copy = store.get(msg.id)
    copy.poll_options.append("C")
    assert store.get(msg.id).poll_options == ["A", "B"]


def test_delete_is_safe_when_absent(store):
    assert store.delete("missing") is False
    store.save(make_message())
    assert store.delete("m_1") is True
    assert store.get("m_1") is None


def test_list_accessors(store):
    store.save(make_message("m_1", channel="C1"))
    store.save(make_message("m_2", channel="C2", user_id="42"))
    failed = make_message("m_3", channel="C1", status="failed")
    store.save(failed)

    assert [m.id for m in store.list_active()] == ["m_1", "m_2"]
    assert {m.id for m in store.list_by_channel("C1")} == {"m_1", "m_3"}
    assert [m.id for m in store.list_by_user("42")] == ["m_2"]


def test_records_survive_reopen(db_path):
    first = MessageStore(db_path)
    first.save(make_message("m_1", repeat="weekly"))
    first.save_votes("m_1", {0: ["U1"], 1: []})

    second = MessageStore(db_path)
    assert second.get("m_1").repeat == "weekly"
    assert second.get_votes("m_1") == {0: ["U1"], 1: []}
    assert second.degraded is False


def test_unavailable_database_falls_back_to_memory(tmp_path):
    store = MessageStore(str(tmp_path / "missing-dir" / "db.sqlite"))
    assert store.degraded is True
    store.save(make_message())
    assert store.get("m_1") is not None


def test_delete_keep_poll_preserves_snapshot_and_votes(store):
    msg = make_message(type="pollSingle", text="?", poll_options=["A", "B"])
    store.save(msg)
    store.save_snapshot(PollSnapshot(poll_id=msg.id, message=msg, channel="C1", message_ref="7"))
    store.save_votes(msg.id, {0: ["U1"], 1: []})

    store.delete(msg.id, keep_poll=True)
    assert store.get(msg.id) is None
    assert store.get_snapshot(msg.id).message_ref == "7"
    assert store.get_votes(msg.id) == {0: ["U1"], 1: []}

    store.delete(msg.id)
    assert store.get_snapshot(msg.id) is None
    assert store.get_votes(msg.id) is None


def test_cleanup_old_snapshots_skips_live_records(store):
    live = make_message("m_live", type="pollSingle", text="?", poll_options=["A", "B"])
    gone = make_message("m_gone", type="pollSingle", text="?", poll_options=["A", "B"])
    store.save(live)
    for msg in (live, gone):
        store.save_snapshot(PollSnapshot(poll_id=msg.id, message=msg, channel="C1"))

    assert store.cleanup_old_snapshots(max_age_days=0) == ["m_gone"]
    assert store.get_snapshot("m_live") is not None
    assert store.get_snapshot("m_gone") is None


def test_cleanup_failed_records_keeps_fresh_and_active(store):
    store.save(make_message("m_failed", status="failed"))
    store.save(make_message("m_active"))

    assert store.cleanup_failed_records(max_age_days=30) == []
    assert store.cleanup_failed_records(max_age_days=0) == ["m_failed"]
    assert store.get("m_failed") is None
    assert store.get("m_active") is not None


def test_revision_survives_reopen(db_path):
    MessageStore(db_path).save(make_message("m_1", revision=3))
    assert MessageStore(db_path).get("m_1").revision == 3
