#!/usr/bin/env python3
"""Telegram Bot API helpers used by tgcloud-sync to deliver files."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

DEFAULT_API_URL = 'https://api.telegram.org/bot'
MAX_UPLOAD_SIZE = 50 * 1024 * 1024
RETRYABLE_CLIENT_ERRORS = {401, 403, 404, 429}

logger = logging.getLogger('tgcloud-sync')


@dataclass
class TelegramAPIConfig:
    token: str
    api_url: str = DEFAULT_API_URL
    verify_tls: bool = True
    timeout: float = 30
    upload_timeout: float = 300
    max_upload_size: int = MAX_UPLOAD_SIZE
    max_retry_after: int = 30
    dry_run: bool = False


class TelegramAPIError(Exception):
    """Raised when communicating with the Telegram Bot API fails."""

    def __init__(self, message: str, *, error_code: Optional[int] = None,
                 retry_after: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.error_code = error_code
        self.retry_after = retry_after
        self.retryable = retryable


# ─── Models ────────────────────────────────────────────────────────────────────

@dataclass
class Chat:
    id: int
    type: str = ''
    title: str = ''
    username: str = ''

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'Chat':
        data = data or {}
        return cls(
            id=data.get('id', 0),
            type=data.get('type', ''),
            title=data.get('title', ''),
            username=data.get('username', ''),
        )


@dataclass
class User:
    id: int
    is_bot: bool = False
    first_name: str = ''
    username: str = ''

    @classmethod
    def from_dict(cls, data: dict) -> 'User':
        return cls(
            id=data.get('id', 0),
            is_bot=bool(data.get('is_bot', False)),
            first_name=data.get('first_name', ''),
            username=data.get('username', ''),
        )


@dataclass
class Attachment:
    """A document, audio, video or photo size attached to a message."""

    file_id: str
    file_unique_id: str = ''
    file_name: str = ''
    mime_type: str = ''
    file_size: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> 'Attachment':
        return cls(
            file_id=data.get('file_id', ''),
            file_unique_id=data.get('file_unique_id', ''),
            file_name=data.get('file_name', ''),
            mime_type=data.get('mime_type', ''),
            file_size=data.get('file_size', 0),
        )


@dataclass
class Message:
    message_id: int
    date: int = 0
    chat: Chat = field(default_factory=lambda: Chat(id=0))
    text: str = ''
    document: Optional[Attachment] = None
    audio: Optional[Attachment] = None
    video: Optional[Attachment] = None
    photo: list[Attachment] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> 'Message':
        def _attachment(key: str) -> Optional[Attachment]:
            value = data.get(key)
            return Attachment.from_dict(value) if value else None

        return cls(
            message_id=data.get('message_id', 0),
            date=data.get('date', 0),
            chat=Chat.from_dict(data.get('chat')),
            text=data.get('text', ''),
            document=_attachment('document'),
            audio=_attachment('audio'),
            video=_attachment('video'),
            photo=[Attachment.from_dict(size) for size in data.get('photo') or []],
        )

    @property
    def attachment(self) -> Optional[Attachment]:
        if self.photo:
            # Telegram lists photo sizes smallest first.
            return self.photo[-1]
        return self.document or self.audio or self.video


@dataclass
class TelegramFile:
    file_id: str
    file_unique_id: str = ''
    file_path: str = ''
    file_size: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> 'TelegramFile':
        return cls(
            file_id=data.get('file_id', ''),
            file_unique_id=data.get('file_unique_id', ''),
            file_path=data.get('file_path', ''),
            file_size=data.get('file_size', 0),
        )


# ─── Client ────────────────────────────────────────────────────────────────────

def _describe_response_error(response: requests.Response) -> str:
    detail = response.text.strip()
    if not detail:
        return ''
    detail = " ".join(detail.split())
    if len(detail) > 512:
        detail = detail[:509] + '...'
    return f" ({detail})"


def _is_retryable_status(status: int) -> bool:
    """Return False when resending the same request unchanged fails again.

    Most 4xx responses reject the request itself, e.g. a photo with invalid
    dimensions or a 413. Rate limits and auth/access errors stay retryable
    since they concern the bot or the chat rather than the file.
    """

    if status in RETRYABLE_CLIENT_ERRORS:
        return True
    return not 400 <= status < 500


class TelegramBotClient:
    """Minimal Bot API client implementing the uploader used by tgsync."""

    def __init__(self, config: TelegramAPIConfig):
        if not config.token:
            raise ValueError("Telegram bot token cannot be empty")
        self.config = config
        self.session = requests.Session()
        self.session.verify = config.verify_tls

    def _url(self, method: str) -> str:
        return f"{self.config.api_url}{self.config.token}/{method}"

    def _redacted(self, method: str) -> str:
        return f"{self.config.api_url}<token>/{method}"

    def _request(self, method: str, *, payload: Optional[dict] = None,
                 upload: Optional[tuple[str, str]] = None) -> Any:
        """POST *method* and return the ``result`` of the Bot API envelope.

        *upload* is a ``(field, path)`` pair sent as multipart form data
        together with *payload*; without it the payload is sent as JSON.
        """

        if self.config.dry_run:
            logger.info("DRY-RUN: would POST %s %s", self._redacted(method), payload)
            return None

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "TelegramAPI: POST %s payload=%s%s",
                self._redacted(method),
                json.dumps(payload, sort_keys=True) if payload is not None else '{}',
                f" {upload[0]}={upload[1]}" if upload else '',
            )

        try:
            if upload is None:
                response = self.session.post(
                    self._url(method),
                    json=payload or {},
                    timeout=self.config.timeout,
                )
            else:
                field_name, path = upload
                with open(path, 'rb') as handle:
                    response = self.session.post(
                        self._url(method),
                        data=payload or {},
                        files={field_name: (os.path.basename(path), handle)},
                        timeout=self.config.upload_timeout,
                    )
        except requests.RequestException as exc:
            raise TelegramAPIError(f"{method} failed: {exc}") from exc
        except OSError as exc:
            raise TelegramAPIError(f"Cannot open {upload[1] if upload else method}: {exc}") from exc

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 400 or not data.get('ok', False):
            description = data.get('description')
            error_code = data.get('error_code') or response.status_code
            retry_after = (data.get('parameters') or {}).get('retry_after')
            if description:
                message = f"{method} failed: {error_code} {description}"
            else:
                message = (
                    f"{method} failed: HTTP {response.status_code} {response.reason}"
                    f"{_describe_response_error(response)}"
                )
            raise TelegramAPIError(
                message,
                error_code=error_code,
                retry_after=retry_after,
                retryable=_is_retryable_status(response.status_code),
            )

        return data.get('result')

    def _call(self, method: str, *, payload: Optional[dict] = None,
              upload: Optional[tuple[str, str]] = None) -> Any:
        try:
            return self._request(method, payload=payload, upload=upload)
        except TelegramAPIError as exc:
            if (
                exc.error_code == 429
                and exc.retry_after is not None
                and exc.retry_after <= self.config.max_retry_after
            ):
                logger.warning("TelegramAPI: rate limited on %s, retrying in %ss", method, exc.retry_after)
                time.sleep(exc.retry_after)
                return self._request(method, payload=payload, upload=upload)
            raise

    def _check_upload(self, path: str) -> None:
        if not path:
            raise TelegramAPIError("File path cannot be empty", retryable=False)
        try:
            size = os.path.getsize(path)
        except OSError as exc:
            raise TelegramAPIError(f"Cannot open {path}: {exc}") from exc
        if size > self.config.max_upload_size:
            raise TelegramAPIError(
                f"{path} is {size} bytes, larger than the {self.config.max_upload_size} byte upload limit",
                retryable=False,
            )

    def _send_file(self, method: str, field_name: str, chat_id: str, path: str,
                   caption: str = '') -> Message:
        self._check_upload(path)
        payload = {'chat_id': chat_id}
        if caption:
            payload['caption'] = caption
        result = self._call(method, payload=payload, upload=(field_name, path))
        return self._message(result)

    @staticmethod
    def _message(result: Any) -> Message:
        if result is None:
            return Message(message_id=0)
        return Message.from_dict(result)

    def get_me(self) -> User:
        result = self._call('getMe')
        return User.from_dict(result or {})

    def get_file(self, file_id: str) -> TelegramFile:
        if not file_id:
            raise TelegramAPIError("File id cannot be empty", retryable=False)
        result = self._call('getFile', payload={'file_id': file_id})
        return TelegramFile.from_dict(result or {'file_id': file_id})

    def send_message(self, chat_id: str, text: str, parse_mode: Optional[str] = None) -> Message:
        payload = {'chat_id': chat_id, 'text': text}
        if parse_mode:
            payload['parse_mode'] = parse_mode
        return self._message(self._call('sendMessage', payload=payload))

    def send_document(self, chat_id: str, path: str, caption: str = '') -> Message:
        return self._send_file('sendDocument', 'document', chat_id, path, caption)

    def send_audio(self, chat_id: str, path: str, caption: str = '') -> Message:
        return self._send_file('sendAudio', 'audio', chat_id, path, caption)

    def send_photo(self, chat_id: str, path: str, caption: str = '') -> Message:
        return self._send_file('sendPhoto', 'photo', chat_id, path, caption)

    def send_video(self, chat_id: str, path: str, caption: str = '') -> Message:
        return self._send_file('sendVideo', 'video', chat_id, path, caption)
