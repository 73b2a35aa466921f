import os

# 기본 디렉토리 설정
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# 경로 설정
LOG_FILE = os.path.join(BASE_DIR, "launch.log")
PLAYED_AUDIO_DIR = os.getenv("PLAYED_AUDIO_DIR", "")   # 비어 있으면 인메모리 기록

# 서버 설정
DEFAULT_HOST = os.getenv("HOST", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("PORT", "8000"))
SESSION_TTL = int(os.getenv("SESSION_TTL", "3600"))   # 쿠키 세션 만료 (초)

# 시험 백엔드 설정 (비어 있으면 샘플 인메모리 백엔드 사용)
API_BASE_URL = os.getenv("API_BASE_URL", "")
API_TOKEN = os.getenv("API_TOKEN", "")
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "10"))

# 타이머 설정
TICK_INTERVAL_SECONDS = 1.0
WARNING_THRESHOLDS = (300, 60)   # 남은 시간 경고 (5분, 1분)
WARNING_DISMISS_SECONDS = 5.0    # 경고 알림 자동 닫힘

# 답안 저장 설정
ANSWER_DEBOUNCE_SECONDS = float(os.getenv("ANSWER_DEBOUNCE_SECONDS", "1.5"))
