import pytest

from language_test_cbt.services.audio_guard import (
    AudioPlayGuard, JsonFileKeyValueStore, MemoryKeyValueStore, audio_id_for,
)


def test_audio_id_from_url():
    assert audio_id_for("/static/audio/section1.mp3") == "audio-section1"
    assert audio_id_for("https://cdn.example.com/a/b/track-02.ogg?v=3") == "audio-track-02"
    with pytest.raises(ValueError):
        audio_id_for("/")


def test_play_once_without_replay():
    guard = AudioPlayGuard()
    assert guard.can_play("audio-s1", allow_replay=False)
    assert guard.mark_played("audio-s1") is True
    assert guard.mark_played("audio-s1") is False
    assert guard.has_played("audio-s1")
    assert not guard.can_play("audio-s1", allow_replay=False)


def test_allow_replay_bypasses_guard_and_writes_nothing():
    store = MemoryKeyValueStore()
    guard = AudioPlayGuard(store)
    assert guard.request_play("audio-s2", allow_replay=True).allowed
    assert guard.request_play("audio-s2", allow_replay=True).allowed
    assert guard.mark_played("audio-s2", allow_replay=True) is False
    assert store._data == {}
    guard.mark_played("audio-s2")
    assert guard.can_play("audio-s2", allow_replay=True)


def test_second_manual_play_is_denied():
    guard = AudioPlayGuard()
    first = guard.request_play("audio-s3")
    assert first.allowed and first.marked
    second = guard.request_play("audio-s3")
    assert not second.allowed
    assert second.warning


def test_blocked_autoplay_still_consumes_play():
    guard = AudioPlayGuard()
    decision = guard.record_autoplay("audio-s4", blocked=True)
    assert not decision.allowed
    assert decision.marked
    assert decision.warning
    assert not guard.can_play("audio-s4")


def test_played_flags_survive_reload(tmp_path):
    path = tmp_path / "profile" / "played.json"
    AudioPlayGuard(JsonFileKeyValueStore(str(path))).mark_played("audio-s5")

    reloaded = AudioPlayGuard(JsonFileKeyValueStore(str(path)))
    assert reloaded.has_played("audio-s5")
    assert not reloaded.can_play("audio-s5")
    assert reloaded.can_play("audio-other")


def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "played.json"
    path.write_text("{not json", encoding="utf-8")
    guard = AudioPlayGuard(JsonFileKeyValueStore(str(path)))
    assert not guard.has_played("audio-s1")
    guard.mark_played("audio-s1")
    assert AudioPlayGuard(JsonFileKeyValueStore(str(path))).has_played("audio-s1")
