"""
alarm_reporter.py — Format alarm payloads and POST them to the alarm server.

Delivery is best effort: one blocking request per event, no retry, no
queue.  Every failure is logged and swallowed so that a dead server never
stalls or kills a channel.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

import requests

from .config_manager import RecorderConfig, ServerEndpoint
from .errors import TransportError
from .json_logging import get_logger

log = get_logger("alarm_reporter")


def make_url(file_abs_path: str, save_dir: str, base_file_url: str) -> str:
    """Build the public reference for a stored file.

    Args:
        file_abs_path: Absolute path of the file on disk (may be empty).
        save_dir: Storage root the public base URL is mounted on.
        base_file_url: Public prefix; empty means "report the local path".

    Returns:
        ``file_abs_path`` verbatim when no base URL is configured, otherwise
        ``base_file_url`` joined with the root-relative path by exactly one
        slash.  An empty path stays empty.
    """
    if not base_file_url:
        return file_abs_path
    if not file_abs_path:
        return ""
    rel = file_abs_path
    if save_dir:
        try:
            rel = os.path.relpath(file_abs_path, save_dir)
        except ValueError:
            # different drive on Windows
            rel = file_abs_path
    rel = rel.replace(os.sep, "/")
    return base_file_url.rstrip("/") + "/" + rel.lstrip("/")


class AlarmReporter:
    """Sends one JSON alarm per event to the configured endpoint.

    Args:
        config: Validated recorder configuration (endpoint, fixed report
            fields, URL settings, timeout).
        session: Object exposing ``post(url, json=..., headers=..., timeout=...)``;
            defaults to a new :class:`requests.Session`.
    """

    def __init__(self, config: RecorderConfig, session: Optional[Any] = None) -> None:
        self._config = config
        self._endpoint: Optional[ServerEndpoint] = config.endpoint
        self._session = session if session is not None else requests.Session()

    @property
    def enabled(self) -> bool:
        return self._endpoint is not None

    def make_url(self, file_abs_path: str) -> str:
        return make_url(file_abs_path, self._config.save_dir, self._config.base_file_url)

    def build_payload(
        self,
        img_path: str,
        video_path: str,
        datetime_str: str,
        resolved_type: int,
    ) -> Dict[str, Any]:
        """Assemble the alarm body; the unused video field is sent empty."""
        report = self._config.report
        video_url = self.make_url(video_path)
        payload: Dict[str, Any] = {
            "deviceId": report.device_id,
            "deviceIp": report.device_ip,
            "safetyId": report.safety_id,
            "safetyName": report.safety_name,
            "warning": report.warning,
            "type": resolved_type,
        }
        if self._config.video_url_field == "brakeUrl":
            payload["brakeUrl"] = video_url
            payload["safetyUrl"] = ""
        else:
            payload["safetyUrl"] = video_url
            payload["brakeUrl"] = ""
        payload["datatime"] = datetime_str
        payload["imgUrl"] = self.make_url(img_path)
        return payload

    def _send(self, payload: Dict[str, Any]) -> int:
        """POST ``payload``; return the response body length.

        Raises:
            TransportError: On a transport fault, no response, or a status
                other than 200.
        """
        try:
            response = self._session.post(
                self._endpoint.url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self._config.http_timeout_sec,
            )
        except requests.RequestException as exc:
            raise TransportError(f"http post failed: {exc}", cause=exc) from exc
        if response is None:
            raise TransportError("http post failed: no response")
        if response.status_code != 200:
            raise TransportError(f"http status: {response.status_code}")
        return len(response.content or b"")

    def post_alarm(
        self,
        channel: int,
        img_path: str,
        video_path: str,
        datetime_str: str,
        resolved_type: int,
    ) -> bool:
        """Report one event.  Returns ``True`` on a 200 response.

        Never raises; without an endpoint this is a silent no-op.
        """
        if self._endpoint is None:
            return False
        payload = self.build_payload(img_path, video_path, datetime_str, resolved_type)
        try:
            body_len = self._send(payload)
        except TransportError as exc:
            log.error(
                "Alarm post failed",
                extra={"channel": channel, "endpoint": self._endpoint.url, "error": str(exc)},
            )
            return False
        log.info(
            "Alarm post ok",
            extra={"channel": channel, "status": 200, "len": body_len, "type": resolved_type},
        )
        return True

    def close(self) -> None:
        close = getattr(self._session, "close", None)
        if callable(close):
            close()
