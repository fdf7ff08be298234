"""端末識別子の解析

ホスト（ウォッチ）名とコンパニオン端末名から UserID / SmartWatchID / AndroidID を取り出す。
形式に合わない場合はセンチネル値にフォールバックし、例外は投げない。
"""

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

UNKNOWN_USER = "UnknownUser"
UNKNOWN_WATCH = "UnknownWatch"
UNKNOWN_ANDROID = "UnknownAndroid"

_WATCH_NAME = re.compile(r"UserID-(\d+)-SmartWatchID-(\d+)")
_ANDROID_NAME = re.compile(r"Android-(\d+)")


@dataclass(frozen=True)
class DeviceIdentity:
    user_id: str = UNKNOWN_USER
    watch_id: str = UNKNOWN_WATCH
    android_id: str = UNKNOWN_ANDROID


def parse_identity(watch_name: str | None, android_name: str | None) -> DeviceIdentity:
    """
    Args:
        watch_name: ホスト側の名前（例: "UserID-7-SmartWatchID-42"）
        android_name: コンパニオン端末の名前（例: "Android-9"）
    """
    user_id, watch_id = UNKNOWN_USER, UNKNOWN_WATCH
    m = _WATCH_NAME.fullmatch(watch_name or "")
    if m:
        user_id, watch_id = m.group(1), m.group(2)
        logger.debug(f"[Identity] Parsed watch name: userId={user_id}, watchId={watch_id}")
    else:
        logger.warning(f"[Identity] Invalid or missing watch name format: {watch_name!r}")

    android_id = UNKNOWN_ANDROID
    m = _ANDROID_NAME.fullmatch(android_name or "")
    if m:
        android_id = m.group(1)
        logger.debug(f"[Identity] Parsed android name: androidId={android_id}")
    else:
        logger.warning(f"[Identity] Invalid or missing android name format: {android_name!r}")

    return DeviceIdentity(user_id, watch_id, android_id)
