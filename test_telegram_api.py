import json
import tempfile
from pathlib import Path
from unittest import TestCase
from unittest.mock import patch

import requests

import telegram_api
from telegram_api import (
    Message,
    TelegramAPIConfig,
    TelegramAPIError,
    TelegramBotClient,
)


def _response(payload, status=200, reason="OK"):
    response = requests.Response()
    response.status_code = status
    response.reason = reason
    response._content = json.dumps(payload).encode() if payload is not None else b""
    return response


def _ok(result):
    return _response({"ok": True, "result": result})


MESSAGE = {
    "message_id": 17,
    "date": 1700000000,
    "chat": {"id": -1001, "type": "channel", "title": "Backups"},
    "document": {"file_id": "F1", "file_unique_id": "U1", "file_name": "a.txt", "file_size": 4},
}


class ClientTestCase(TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)
        self.client = TelegramBotClient(TelegramAPIConfig(token="123:abc"))

    def _file(self, name="a.txt", data=b"data"):
        path = self.root / name
        path.write_bytes(data)
        return str(path)


class RequestTest(ClientTestCase):
    def test_send_message_posts_json_to_method_url(self):
        with patch.object(self.client.session, "post", return_value=_ok({"message_id": 5})) as post:
            msg = self.client.send_message("@chan", "hello")

        self.assertEqual(5, msg.message_id)
        args, kwargs = post.call_args
        self.assertEqual("https://api.telegram.org/bot123:abc/sendMessage", args[0])
        self.assertEqual({"chat_id": "@chan", "text": "hello"}, kwargs["json"])
        self.assertEqual(30, kwargs["timeout"])

    def test_send_document_uploads_multipart(self):
        path = self._file()
        seen = {}

        def fake_post(url, data=None, files=None, timeout=None):
            name, handle = files["document"]
            seen.update(url=url, data=data, name=name, body=handle.read(), timeout=timeout)
            return _ok(MESSAGE)

        with patch.object(self.client.session, "post", side_effect=fake_post):
            msg = self.client.send_document("@chan", path, "File: a.txt")

        self.assertTrue(seen["url"].endswith("/sendDocument"))
        self.assertEqual({"chat_id": "@chan", "caption": "File: a.txt"}, seen["data"])
        self.assertEqual("a.txt", seen["name"])
        self.assertEqual(b"data", seen["body"])
        self.assertEqual(300, seen["timeout"])
        self.assertEqual(17, msg.message_id)
        self.assertEqual(-1001, msg.chat.id)
        self.assertEqual("F1", msg.attachment.file_id)

    def test_each_category_uses_its_method_and_field(self):
        path = self._file("clip.mp4")
        expected = {
            "send_audio": ("sendAudio", "audio"),
            "send_photo": ("sendPhoto", "photo"),
            "send_video": ("sendVideo", "video"),
            "send_document": ("sendDocument", "document"),
        }
        for attr, (method, field_name) in expected.items():
            with patch.object(self.client.session, "post", return_value=_ok(MESSAGE)) as post:
                getattr(self.client, attr)("1", path, "cap")
            args, kwargs = post.call_args
            self.assertTrue(args[0].endswith("/" + method), attr)
            self.assertIn(field_name, kwargs["files"])

    def test_api_error_envelope_raises(self):
        failure = _response(
            {"ok": False, "error_code": 400, "description": "Bad Request: chat not found"},
            status=400,
            reason="Bad Request",
        )
        with patch.object(self.client.session, "post", return_value=failure):
            with self.assertRaises(TelegramAPIError) as info:
                self.client.send_message("@missing", "hi")

        self.assertEqual(400, info.exception.error_code)
        self.assertIn("chat not found", str(info.exception))
        self.assertFalse(info.exception.retryable)

    def test_request_rejection_is_not_retryable(self):
        path = self._file("wide.png")
        failure = _response(
            {"ok": False, "error_code": 400, "description": "Bad Request: PHOTO_INVALID_DIMENSIONS"},
            status=400,
            reason="Bad Request",
        )
        too_large = _response(None, status=413, reason="Request Entity Too Large")
        for response in (failure, too_large):
            with patch.object(self.client.session, "post", return_value=response):
                with self.assertRaises(TelegramAPIError) as info:
                    self.client.send_photo("1", path, "cap")
            self.assertFalse(info.exception.retryable, response.status_code)

    def test_access_and_server_errors_stay_retryable(self):
        for status in (401, 403, 404, 500, 502):
            failure = _response({"ok": False, "error_code": status, "description": "nope"}, status=status)
            with patch.object(self.client.session, "post", return_value=failure):
                with self.assertRaises(TelegramAPIError) as info:
                    self.client.send_message("1", "hi")
            self.assertTrue(info.exception.retryable, status)

    def test_non_json_error_includes_body(self):
        failure = requests.Response()
        failure.status_code = 502
        failure.reason = "Bad Gateway"
        failure._content = b"<html>upstream   down</html>"
        with patch.object(self.client.session, "post", return_value=failure):
            with self.assertRaises(TelegramAPIError) as info:
                self.client.get_me()

        self.assertEqual(502, info.exception.error_code)
        self.assertIn("HTTP 502 Bad Gateway (<html>upstream down</html>)", str(info.exception))

    def test_transport_error_is_wrapped(self):
        with patch.object(self.client.session, "post", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(TelegramAPIError) as info:
                self.client.send_message("1", "hi")
        self.assertIsInstance(info.exception.__cause__, requests.ConnectionError)

    def test_rate_limit_retries_once(self):
        limited = _response(
            {"ok": False, "error_code": 429, "description": "Too Many Requests",
             "parameters": {"retry_after": 2}},
            status=429,
        )
        with patch.object(self.client.session, "post", side_effect=[limited, _ok({"message_id": 9})]) as post:
            with patch("telegram_api.time.sleep") as sleep:
                msg = self.client.send_message("1", "hi")

        self.assertEqual(9, msg.message_id)
        self.assertEqual(2, post.call_count)
        sleep.assert_called_once_with(2)

    def test_long_rate_limit_is_not_retried(self):
        limited = _response(
            {"ok": False, "error_code": 429, "description": "Too Many Requests",
             "parameters": {"retry_after": 600}},
            status=429,
        )
        with patch.object(self.client.session, "post", return_value=limited) as post:
            with self.assertRaises(TelegramAPIError) as info:
                self.client.send_message("1", "hi")

        self.assertEqual(1, post.call_count)
        self.assertEqual(600, info.exception.retry_after)
        self.assertTrue(info.exception.retryable)

    def test_get_file_returns_metadata(self):
        result = {"file_id": "F1", "file_unique_id": "U1", "file_path": "documents/a.txt", "file_size": 4}
        with patch.object(self.client.session, "post", return_value=_ok(result)) as post:
            info = self.client.get_file("F1")

        self.assertEqual("documents/a.txt", info.file_path)
        self.assertEqual({"file_id": "F1"}, post.call_args.kwargs["json"])


class UploadValidationTest(ClientTestCase):
    def test_empty_path_is_not_retryable(self):
        with self.assertRaises(TelegramAPIError) as info:
            self.client.send_document("1", "", "cap")
        self.assertFalse(info.exception.retryable)

    def test_missing_file_raises_before_request(self):
        with patch.object(self.client.session, "post") as post:
            with self.assertRaises(TelegramAPIError):
                self.client.send_photo("1", str(self.root / "gone.png"), "cap")
        post.assert_not_called()

    def test_oversized_file_is_rejected(self):
        client = TelegramBotClient(TelegramAPIConfig(token="t", max_upload_size=3))
        path = self._file(data=b"four")
        with patch.object(client.session, "post") as post:
            with self.assertRaises(TelegramAPIError) as info:
                client.send_document("1", path, "cap")
        post.assert_not_called()
        self.assertFalse(info.exception.retryable)
        self.assertIn("upload limit", str(info.exception))


class DryRunTest(TestCase):
    def test_dry_run_skips_network(self):
        client = TelegramBotClient(TelegramAPIConfig(token="t", dry_run=True))
        with patch.object(client.session, "post") as post:
            with self.assertLogs("tgcloud-sync", level="INFO") as logs:
                msg = client.send_message("1", "hi")

        post.assert_not_called()
        self.assertEqual(Message(message_id=0), msg)
        self.assertTrue(any("DRY-RUN" in line for line in logs.output), logs.output)
        self.assertNotIn("/bott/", "\n".join(logs.output))


class ConfigTest(TestCase):
    def test_empty_token_rejected(self):
        with self.assertRaises(ValueError):
            TelegramBotClient(TelegramAPIConfig(token=""))

    def test_defaults(self):
        config = TelegramAPIConfig(token="t")
        self.assertEqual(telegram_api.DEFAULT_API_URL, config.api_url)
        self.assertEqual(50 * 1024 * 1024, config.max_upload_size)


class ModelTest(TestCase):
    def test_photo_attachment_is_largest_size(self):
        msg = Message.from_dict({
            "message_id": 1,
            "chat": {"id": 2},
            "photo": [{"file_id": "small"}, {"file_id": "large"}],
        })
        self.assertEqual("large", msg.attachment.file_id)
        self.assertIsNone(msg.document)
