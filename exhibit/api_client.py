from __future__ import annotations

"""HTTP clients for the remote face-recognition and bot services.

Both services identify the kiosk by the `deviceid` query parameter. Failures
are returned as classified `ApiResult` values so the tick loop never has to
handle transport exceptions.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

DeviceIdProvider = Callable[[], Optional[str]]


class ApiFailure(Enum):
    """Classification of a failed remote call."""

    BAD_REQUEST = "bad_request"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"
    MALFORMED_RESPONSE = "malformed_response"


@dataclass
class ApiResult:
    """Outcome of one remote call: either `value` or a `failure` class."""

    ok: bool
    value: Any = None
    failure: Optional[ApiFailure] = None
    status_code: Optional[int] = None

    @classmethod
    def success(cls, value: Any, status_code: Optional[int] = None) -> "ApiResult":
        return cls(ok=True, value=value, status_code=status_code)

    @classmethod
    def failed(cls, failure: ApiFailure, status_code: Optional[int] = None) -> "ApiResult":
        return cls(ok=False, failure=failure, status_code=status_code)


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class FaceRecord:
    """One face recognised by the remote API."""

    face_id: Optional[str] = None
    age: Optional[float] = None
    gender: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, item: Dict[str, Any]) -> "FaceRecord":
        """Accept both `faceAttributes.{age,gender}` and flat attribute layouts."""
        attributes = item.get("faceAttributes") or {}
        if not isinstance(attributes, dict):
            attributes = {}
        face_id = item.get("faceId", item.get("id"))
        gender = attributes.get("gender", item.get("gender"))
        return cls(
            face_id=str(face_id) if face_id is not None else None,
            age=_as_float(attributes.get("age", item.get("age"))),
            gender=str(gender) if gender else None,
            raw=dict(item),
        )


def _unwrap_text(body: str) -> str:
    """Bodies may be plain text or a JSON-encoded string; return the text."""
    text = body.strip()
    if text.startswith('"'):
        try:
            decoded = json.loads(text)
        except ValueError:
            return text
        if isinstance(decoded, str):
            return decoded.strip()
    return text


class _ServiceClient:
    """Shared session handling and non-2xx classification."""

    def __init__(
        self,
        base_url: str,
        device_id_provider: DeviceIdProvider,
        timeout_seconds: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("?")
        self.device_id_provider = device_id_provider
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def _device_id(self) -> str:
        return self.device_id_provider() or ""

    def _classify_status(self, response: requests.Response, operation: str) -> ApiResult:
        if response.status_code == 400:
            logger.error(
                "%s: the API returned a 400 Bad Request. This is caused by either a missing DeviceId "
                "parameter or one containing a GUID that is not registered with the device API.",
                operation,
            )
            return ApiResult.failed(ApiFailure.BAD_REQUEST, status_code=400)
        logger.error(
            "%s: the API returned a non-success status %d %s",
            operation,
            response.status_code,
            response.reason or "",
        )
        return ApiResult.failed(ApiFailure.HTTP_ERROR, status_code=response.status_code)

    def close(self) -> None:
        """Close the underlying requests session."""
        self._session.close()


class RecognitionClient(_ServiceClient):
    """Client for `POST {face_api_url}?deviceid={id}`."""

    def post_image(self, image: bytes) -> ApiResult:
        """Send one encoded frame; `value` is the list of `FaceRecord`."""
        url = f"{self.base_url}?deviceid={self._device_id()}"
        try:
            response = self._session.post(
                url,
                data=image,
                headers={"Content-Type": "application/octet-stream"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.error("Face API call failed: %s", exc)
            return ApiResult.failed(ApiFailure.NETWORK_ERROR)

        if not 200 <= response.status_code < 300:
            return self._classify_status(response, "Face API")

        try:
            payload = response.json()
        except ValueError:
            logger.error("Face API returned a body that is not JSON")
            return ApiResult.failed(ApiFailure.MALFORMED_RESPONSE, status_code=response.status_code)
        if not isinstance(payload, list):
            logger.error("Face API returned %s instead of a list of faces", type(payload).__name__)
            return ApiResult.failed(ApiFailure.MALFORMED_RESPONSE, status_code=response.status_code)

        faces: List[FaceRecord] = [FaceRecord.from_json(item) for item in payload if isinstance(item, dict)]
        logger.info("Face API recognised %d face(s)", len(faces))
        return ApiResult.success(faces, status_code=response.status_code)


class ConversationClient(_ServiceClient):
    """Client for the bot endpoint that answers spoken questions."""

    def post_message(self, text: str) -> ApiResult:
        """Post recognised speech; `value` is the conversation id."""
        url = f"{self.base_url}?deviceid={self._device_id()}&message={quote(text, safe='')}"
        try:
            response = self._session.post(
                url,
                data=text.encode("utf-8"),
                headers={"Content-Type": "text/plain; charset=utf-8"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.error("Bot API message post failed: %s", exc)
            return ApiResult.failed(ApiFailure.NETWORK_ERROR)

        if not 200 <= response.status_code < 300:
            return self._classify_status(response, "Bot API message")

        conversation_id = _unwrap_text(response.text)
        if not conversation_id:
            return ApiResult.failed(ApiFailure.MALFORMED_RESPONSE, status_code=response.status_code)
        return ApiResult.success(conversation_id, status_code=response.status_code)

    def get_reply(self, conversation_id: str) -> ApiResult:
        """Fetch the bot's reply text for a conversation."""
        url = f"{self.base_url}?conversationId={quote(conversation_id, safe='')}"
        try:
            response = self._session.get(url, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            logger.error("Bot API reply fetch failed: %s", exc)
            return ApiResult.failed(ApiFailure.NETWORK_ERROR)

        if not 200 <= response.status_code < 300:
            return self._classify_status(response, "Bot API reply")
        return ApiResult.success(_unwrap_text(response.text), status_code=response.status_code)
