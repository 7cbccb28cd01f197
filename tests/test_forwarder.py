import json
import unittest
from urllib.parse import parse_qs

import httpx

from reelbox.errors import FileTypeMismatch, ForwardingError
from reelbox.services.captions import CAPTION_LIMIT
from reelbox.services.forwarder import ChannelForwarder, _classify_telegram_error

CHANNEL = -1001000000001


def _ok(message_id: int) -> httpx.Response:
    return httpx.Response(200, json={"ok": True, "result": {"message_id": message_id}})


def _error(description: str, status_code: int = 400) -> httpx.Response:
    return httpx.Response(status_code, json={"ok": False, "description": description})


class RecordingTransport:
    def __init__(self, responses: dict[str, httpx.Response]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, dict[str, str]]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
        self.calls.append((method, form))
        return self.responses[method]


class ChannelForwarderTests(unittest.IsolatedAsyncioTestCase):
    def _forwarder(self, recorder: RecordingTransport) -> ChannelForwarder:
        return ChannelForwarder("123:test", transport=httpx.MockTransport(recorder))

    async def test_document_transport(self) -> None:
        recorder = RecordingTransport({"sendDocument": _ok(41)})
        message_id = await self._forwarder(recorder).forward("file-1", CHANNEL, "<b>Inception</b>")
        self.assertEqual(message_id, 41)
        self.assertEqual(len(recorder.calls), 1)
        method, form = recorder.calls[0]
        self.assertEqual(method, "sendDocument")
        self.assertEqual(form["document"], "file-1")
        self.assertEqual(form["chat_id"], str(CHANNEL))
        self.assertEqual(form["parse_mode"], "HTML")

    async def test_type_mismatch_falls_back_to_video_once(self) -> None:
        recorder = RecordingTransport(
            {
                "sendDocument": _error("Bad Request: type of file mismatch"),
                "sendVideo": _ok(77),
            }
        )
        message_id = await self._forwarder(recorder).forward("file-1", CHANNEL, "caption")
        self.assertEqual(message_id, 77)
        self.assertEqual([method for method, _ in recorder.calls], ["sendDocument", "sendVideo"])
        video_form = recorder.calls[1][1]
        self.assertEqual(video_form["video"], "file-1")
        self.assertEqual(video_form["supports_streaming"], "true")

    async def test_video_rejection_propagates(self) -> None:
        recorder = RecordingTransport(
            {
                "sendDocument": _error("Bad Request: wrong file type"),
                "sendVideo": _error("Bad Request: wrong file identifier/HTTP URL specified"),
            }
        )
        with self.assertRaises(ForwardingError) as ctx:
            await self._forwarder(recorder).forward("file-1", CHANNEL)
        self.assertEqual(ctx.exception.code, "WRONG_FILE_ID")
        self.assertEqual(len(recorder.calls), 2)

    async def test_other_errors_do_not_fall_back(self) -> None:
        recorder = RecordingTransport({"sendDocument": _error("Bad Request: chat not found")})
        with self.assertRaises(ForwardingError) as ctx:
            await self._forwarder(recorder).forward("file-1", CHANNEL)
        self.assertNotIsInstance(ctx.exception, FileTypeMismatch)
        self.assertEqual(ctx.exception.code, "CHAT_NOT_FOUND")
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(str(ctx.exception), "Telegram API error: Bad Request: chat not found")
        self.assertEqual(len(recorder.calls), 1)

    async def test_server_errors_are_retryable(self) -> None:
        recorder = RecordingTransport({"sendDocument": httpx.Response(502, text="bad gateway")})
        with self.assertRaises(ForwardingError) as ctx:
            await self._forwarder(recorder).forward("file-1", CHANNEL)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.code, "HTTP_502")

    async def test_connection_errors_are_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        forwarder = ChannelForwarder("123:test", transport=httpx.MockTransport(handler))
        with self.assertRaises(ForwardingError) as ctx:
            await forwarder.forward("file-1", CHANNEL)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.code, "connection_error")

    async def test_caption_is_truncated(self) -> None:
        recorder = RecordingTransport({"sendDocument": _ok(1)})
        await self._forwarder(recorder).forward("file-1", CHANNEL, "x" * 2000)
        self.assertEqual(len(recorder.calls[0][1]["caption"]), CAPTION_LIMIT)

    async def test_missing_message_id(self) -> None:
        recorder = RecordingTransport(
            {"sendDocument": httpx.Response(200, content=json.dumps({"ok": True, "result": {}}))}
        )
        with self.assertRaises(ForwardingError) as ctx:
            await self._forwarder(recorder).forward("file-1", CHANNEL)
        self.assertEqual(ctx.exception.code, "invalid_response")


class ClassifyTelegramErrorTests(unittest.TestCase):
    def test_codes(self) -> None:
        self.assertEqual(_classify_telegram_error("Bad Request: file is too big"), ("FILE_TOO_LARGE", False))
        self.assertEqual(_classify_telegram_error("Too Many Requests: retry after 5"), ("HTTP_429", True))
        self.assertEqual(_classify_telegram_error("Forbidden: bot is not a member"), ("FORBIDDEN", False))
        self.assertEqual(_classify_telegram_error("something else"), ("TELEGRAM_ERROR", False))


if __name__ == "__main__":
    unittest.main()
