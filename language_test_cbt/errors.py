"""
errors.py

시험 세션 엔진 예외 계층.

  - SessionInitError       : 응시(attempt) 생성/재개 실패. 시작 중단, 재시도 없음.
  - PersistTransientError  : 답안/타이머 동기화 실패. 1회 재시도 후 인메모리 유지 + 경고.
  - LoadError              : 시험/문제/지문 데이터 로드 실패. 재시도 액션과 함께 노출.
"""


class CbtError(Exception):
    """패키지 공통 기반 예외."""


class SessionInitError(CbtError):
    """유효한 세션 상태를 만들 수 없을 때 발생. 호출자에게 전파된다."""


class PersistTransientError(CbtError):
    """백엔드 저장 일시 실패. 엔진 내부에서 흡수되어 경고로 기록된다."""


class LoadError(CbtError):
    """시험 정적 데이터를 불러오지 못함."""
