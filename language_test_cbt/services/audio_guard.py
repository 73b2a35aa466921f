"""
services/audio_guard.py

듣기 음원 1회 재생 제한.

재생 기록은 클라이언트 프로필 단위이며 서버 권위가 아니다.
저장 매체는 KeyValueStore 로 주입한다 (메모리, JSON 파일 등).

정책:
  - allow_replay=True 이면 가드를 완전히 우회하고 기록도 남기지 않는다.
  - 한 번 기록된 재생은 되돌릴 수 없다.
  - 자동재생이 브라우저에 의해 차단되어도 재생 1회를 소모한 것으로 기록한다.
"""

import json
import logging
import os
import re
import threading
from typing import Dict, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

PLAYED_AUDIOS_NAMESPACE = "played-audios"

_MSG_PLAY_ONCE = "이 음원은 시험 중 한 번만 재생할 수 있습니다."
_MSG_AUTOPLAY_BLOCKED = "자동재생이 차단되었습니다. 페이지를 클릭한 뒤 다시 시도해 주세요."


# ── 키-값 저장소 ─────────────────────────────────────────────────────────────

class KeyValueStore:
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileKeyValueStore(KeyValueStore):
    """
    단일 JSON 파일에 저장하는 키-값 저장소. 프로세스 재시작 후에도 유지된다.
    파일이 손상되었으면 빈 저장소로 시작하고 경고를 남긴다.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"재생 기록 파일을 읽지 못했습니다 ({self.path}): {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"재생 기록 파일 형식 오류 ({self.path}), 무시합니다.")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)


# ── 가드 ─────────────────────────────────────────────────────────────────────

class PlaybackDecision(BaseModel):
    audio_id: str
    allowed: bool = Field(..., description="재생 허용 여부")
    marked: bool = Field(False, description="이번 호출로 재생 기록이 남았는지")
    warning: Optional[str] = Field(None, description="사용자에게 보여줄 경고 (치명적 아님)")


def audio_id_for(audio_url: str) -> str:
    """음원 URL에서 안정적인 식별자 생성: 'audio-<파일명(확장자 제외)>'."""
    name = audio_url.rstrip("/").split("/")[-1].split("?")[0]
    stem = re.sub(r"\.[^/.]+$", "", name)
    if not stem:
        raise ValueError(f"음원 경로에서 식별자를 만들 수 없습니다: {audio_url!r}")
    return f"audio-{stem}"


class AudioPlayGuard:

    def __init__(self, store: Optional[KeyValueStore] = None, namespace: str = PLAYED_AUDIOS_NAMESPACE):
        self.store = store if store is not None else MemoryKeyValueStore()
        self.namespace = namespace

    def _key(self, audio_id: str) -> str:
        return f"{self.namespace}:{audio_id}"

    def has_played(self, audio_id: str) -> bool:
        return self.store.get(self._key(audio_id)) == "1"

    def mark_played(self, audio_id: str, allow_replay: bool = False) -> bool:
        """재생 기록. 이미 기록되어 있거나 allow_replay 이면 아무것도 쓰지 않는다."""
        if allow_replay or self.has_played(audio_id):
            return False
        self.store.set(self._key(audio_id), "1")
        logger.info(f"음원 재생 기록: {audio_id}")
        return True

    def can_play(self, audio_id: str, allow_replay: bool = False) -> bool:
        if allow_replay:
            return True
        return not self.has_played(audio_id)

    def request_play(self, audio_id: str, allow_replay: bool = False) -> PlaybackDecision:
        """사용자가 재생 버튼을 눌렀을 때."""
        if not self.can_play(audio_id, allow_replay):
            return PlaybackDecision(audio_id=audio_id, allowed=False, warning=_MSG_PLAY_ONCE)
        marked = self.mark_played(audio_id, allow_replay)
        return PlaybackDecision(audio_id=audio_id, allowed=True, marked=marked)

    def record_autoplay(self, audio_id: str, allow_replay: bool = False, blocked: bool = False) -> PlaybackDecision:
        """
        자동재생 시도 결과 기록.
        차단(blocked)되었더라도 재생 1회를 소모한다.
        """
        if not self.can_play(audio_id, allow_replay):
            return PlaybackDecision(audio_id=audio_id, allowed=False, warning=_MSG_PLAY_ONCE)
        marked = self.mark_played(audio_id, allow_replay)
        if blocked:
            logger.warning(f"자동재생 차단됨 (재생 1회 소모): {audio_id}")
            return PlaybackDecision(
                audio_id=audio_id, allowed=False, marked=marked, warning=_MSG_AUTOPLAY_BLOCKED
            )
        return PlaybackDecision(audio_id=audio_id, allowed=True, marked=marked)
