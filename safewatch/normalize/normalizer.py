import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

from jsonschema import validate
from jsonschema.exceptions import ValidationError

from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.normalize")

SCHEMA = json.loads((Path(__file__).parent / "update_schema.json").read_text(encoding="utf-8"))

# 게이트웨이별 필드 별칭
USER_KEYS = ("user_id", "userId", "user")
TIME_KEYS = ("timestamp", "ts", "sentAt", "sent_at")
CHECKIN_KEYS = ("checkin_message", "checkinMessage", "checkin")
DURESS_KEYS = ("duress", "panic", "sos")


def _first(obj: dict, keys):
    for key in keys:
        if key in obj and obj[key] is not None:
            return obj[key]
    return None


class UpdateNormalizer:
    def to_update(self, raw: Union[bytes, str, dict]) -> dict:
        # 게이트웨이 포맷 → LocationUpdate 입력으로 매핑
        if isinstance(raw, bytes):
            obj = json.loads(raw.decode("utf-8"))
        elif isinstance(raw, str):
            obj = json.loads(raw)
        elif isinstance(raw, dict):
            obj = raw
        else:
            raise ValueError(f"Unsupported raw type: {type(raw)}. Expected bytes, str or dict")
        if not isinstance(obj, dict):
            raise ValueError("update payload must be a JSON object")

        update = {
            "user_id": _first(obj, USER_KEYS),
            "timestamp": self._timestamp(_first(obj, TIME_KEYS)),
        }

        location = self._location(obj)
        if location is not None:
            update["location"] = location

        checkin = _first(obj, CHECKIN_KEYS)
        if checkin is True:
            update["checkin_message"] = ""
        elif isinstance(checkin, str):
            update["checkin_message"] = checkin

        duress = _first(obj, DURESS_KEYS)
        if duress is not None:
            update["duress"] = duress

        # 누락 필드는 스키마 검증에서 걸러냄
        update = {k: v for k, v in update.items() if v is not None}
        try:
            validate(instance=update, schema=SCHEMA)
        except ValidationError as e:
            log.error("업데이트 스키마 검증 실패", error=e.message, user_id=obj.get("user_id", "unknown"))
            raise ValueError(f"update schema validation failed: {e.message}")

        return update

    def _timestamp(self, value):
        """epoch 초는 ISO 8601 UTC로 변환"""
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
        return value

    def _location(self, obj: dict):
        loc = obj.get("location")
        source = loc if isinstance(loc, dict) else obj
        lat = _first(source, ("lat", "latitude"))
        lon = _first(source, ("lon", "lng", "longitude"))
        if lat is None and lon is None:
            return None
        return {"lat": lat, "lon": lon}
