import json
import asyncio
import shutil
import tempfile
import pathlib
import unittest
from unittest.mock import patch
from fastapi.testclient import TestClient

import config
from app import app
from chat_history import AI, HUMAN, FileSystemChatMessageHistory, get_message_id, make_message

client = TestClient(app)

USER_HEADERS = {"X-User-Id": "user-1"}


class TestAPI(unittest.TestCase):
    def setUp(self):
        self.tmp = pathlib.Path(tempfile.mkdtemp())
        self.patchers = [
            patch.object(config, "CHAT_HISTORY_DIR", self.tmp / "chat_history"),
            patch.object(config, "DOCUMENTS_DIR", self.tmp / "documents"),
            patch.object(config, "AUTH_REQUIRED", False),
            patch("config.history_backend", return_value="file"),
            patch("config.storage_configured", return_value=False),
            patch("app.rag.is_ready", return_value=False),
        ]
        for p in self.patchers:
            p.start()

        # Patch model collaborators
        self.patcher_stream = patch("app.stream_chat_completion", return_value=iter(["Hello", " there"]))
        self.mock_stream = self.patcher_stream.start()
        self.patcher_title = patch("app.generate_title", return_value="Greeting")
        self.mock_title = self.patcher_title.start()

    def tearDown(self):
        self.patcher_stream.stop()
        self.patcher_title.stop()
        for p in reversed(self.patchers):
            p.stop()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def history(self, session_id="session-1"):
        return FileSystemChatMessageHistory(session_id, "user-1")

    def post_chat(self, content="Hi", session_id="session-1"):
        payload = {
            "messages": [{"role": "user", "content": content}],
            "context": {"sessionId": session_id},
        }
        return client.post("/api/chats/stream", json=payload, headers=USER_HEADERS)

    def test_chat_stream_happy_path(self):
        response = self.post_chat()
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("application/x-ndjson"))

        chunks = [json.loads(line) for line in response.text.splitlines() if line]
        self.assertEqual("".join(c["delta"]["content"] for c in chunks), "Hello there")
        ai_message_id = chunks[0]["context"]["messageId"]
        self.assertEqual(chunks[0]["context"]["sessionId"], "session-1")

        messages = self.history().get_messages()
        self.assertEqual([m["type"] for m in messages], [HUMAN, AI])
        self.assertEqual(messages[1]["content"], "Hello there")
        self.assertEqual(get_message_id(messages[1]), ai_message_id)
        self.assertEqual(self.history().get_context(), {"title": "Greeting"})

    def test_chat_stream_retry_does_not_duplicate(self):
        self.post_chat()
        self.mock_stream.return_value = iter(["Hello", " there"])
        response = self.post_chat()
        self.assertEqual(response.status_code, 200)

        messages = self.history().get_messages()
        self.assertEqual(len(messages), 2)
        # title is generated once per session
        self.mock_title.assert_called_once()

    def test_chat_stream_passes_history_to_model(self):
        self.post_chat()
        question, history_text, hits = self.mock_stream.call_args[0]
        self.assertEqual(question, "Hi")
        self.assertTrue(history_text.startswith("User (ID: "))
        self.assertEqual(hits, [])

    def test_chat_stream_new_session_id(self):
        response = client.post("/api/chats/stream", json={"messages": [{"role": "user", "content": "Hi"}]})
        self.assertEqual(response.status_code, 200)
        first = json.loads(response.text.splitlines()[0])
        self.assertTrue(first["context"]["sessionId"])

    def test_chat_stream_invalid_messages(self):
        response = client.post("/api/chats/stream", json={"messages": []})
        self.assertEqual(response.status_code, 400)
        response = client.post("/api/chats/stream", json={"messages": [{"role": "user", "content": ""}]})
        self.assertEqual(response.status_code, 400)

    def test_chat_stream_model_failure(self):
        self.mock_stream.side_effect = RuntimeError("model offline")
        response = self.post_chat()
        self.assertEqual(response.status_code, 503)

    def test_chat_stream_title_failure_still_streams(self):
        self.mock_title.side_effect = RuntimeError("title failed")
        response = self.post_chat()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.history().get_context(), {})

    def test_list_sessions(self):
        self.post_chat()
        response = client.get("/api/chats", headers=USER_HEADERS)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), [{"id": "session-1", "title": "Greeting"}])

        self.assertEqual(client.get("/api/chats").status_code, 400)

    def test_get_messages(self):
        self.post_chat()
        response = client.get("/api/chats/session-1/messages", headers=USER_HEADERS)
        self.assertEqual(response.status_code, 200)
        messages = response.json()["messages"]
        self.assertEqual([m["role"] for m in messages], ["user", "assistant"])
        self.assertTrue(all(m["id"] for m in messages))

    def test_cleanup_duplicates(self):
        history = self.history()
        history.add_message(make_message(HUMAN, "Q", "u1"))
        history.add_message(make_message(HUMAN, "Q", "u2"))
        response = client.post("/api/chats/session-1/cleanup", headers=USER_HEADERS)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True, "removedDuplicates": 1, "totalMessages": 1})

    def test_delete_session(self):
        self.post_chat()
        response = client.delete("/api/chats/session-1", headers=USER_HEADERS)
        self.assertEqual(response.status_code, 204)
        self.assertEqual(self.history().get_messages(), [])

        self.assertEqual(client.delete("/api/chats/session-1", headers=USER_HEADERS).status_code, 404)
        self.assertEqual(client.delete("/api/chats/session-1").status_code, 400)

    def test_delete_message(self):
        history = self.history()
        history.add_message(make_message(HUMAN, "Q", "u1"))
        history.add_message(make_message(AI, "A", "a1"))
        history.set_context({"title": "Kept"})

        response = client.request("DELETE", "/api/chats/session-1/messages/a1", headers=USER_HEADERS)
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["deletedMessageId"], "a1")
        self.assertEqual(data["remainingMessages"], 1)
        self.assertIn("title", data["preservedMetadata"])
        self.assertEqual(self.history().get_context(), {"title": "Kept"})

    def test_delete_message_user_from_body(self):
        self.history().add_message(make_message(HUMAN, "Q", "u1"))
        response = client.request(
            "DELETE",
            "/api/chats/session-1/messages/u1",
            json={"messageId": "u1", "sessionId": "session-1", "userId": "user-1"},
        )
        self.assertEqual(response.status_code, 200)

    def test_delete_message_errors(self):
        url = "/api/chats/session-1/messages/u1"
        self.assertEqual(client.request("DELETE", url).status_code, 400)
        # invalid body is tolerated, user comes from the header
        response = client.request("DELETE", url, headers=USER_HEADERS, content=b"{oops")
        self.assertEqual(response.status_code, 400)
        self.assertIn("No messages found", response.json()["detail"])

        self.history().add_message(make_message(HUMAN, "Q", "u1"))
        response = client.request("DELETE", "/api/chats/session-1/messages/nope", headers=USER_HEADERS)
        self.assertEqual(response.status_code, 400)
        self.assertIn("not found", response.json()["detail"])

    def test_delete_message_rewrite_failure(self):
        self.history().add_message(make_message(HUMAN, "Q", "u1"))
        with patch.object(FileSystemChatMessageHistory, "add_message", side_effect=OSError("disk full")):
            response = client.request("DELETE", "/api/chats/session-1/messages/u1", headers=USER_HEADERS)
        self.assertEqual(response.status_code, 503)

    def test_upload_and_get_document(self):
        with patch("app.ingest_document", return_value={"source": "notes.txt", "chunks": 1}) as mock_ingest:
            files = {"file": ("notes.txt", b"some notes", "text/plain")}
            response = client.post("/api/documents", files=files)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["chunks"], 1)
        mock_ingest.assert_called_once()

        response = client.get("/api/documents/notes.txt")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, b"some notes")
        self.assertEqual(client.get("/api/documents/missing.pdf").status_code, 404)

    def test_delete_message_storage_runs_off_event_loop(self):
        self.history().add_message(make_message(HUMAN, "Q", "u1"))
        self.history().add_message(make_message(AI, "A", "a1"))
        on_event_loop = []
        original = FileSystemChatMessageHistory.get_messages

        def get_messages(history):
            try:
                asyncio.get_running_loop()
                on_event_loop.append(True)
            except RuntimeError:
                on_event_loop.append(False)
            return original(history)

        with patch.object(FileSystemChatMessageHistory, "get_messages", autospec=True, side_effect=get_messages):
            response = client.request("DELETE", "/api/chats/session-1/messages/a1", headers=USER_HEADERS)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(on_event_loop)
        self.assertFalse(any(on_event_loop))

    def test_upload_rejected_type_is_not_stored(self):
        files = {"file": ("evil.exe", b"MZ payload", "application/octet-stream")}
        response = client.post("/api/documents", files=files)
        self.assertEqual(response.status_code, 400)
        self.assertFalse((self.tmp / "documents" / "evil.exe").exists())
        self.assertEqual(client.get("/api/documents/evil.exe").status_code, 404)

    def test_upload_failed_ingestion_is_removed(self):
        with patch("app.ingest_document", side_effect=ValueError("unreadable pdf")):
            files = {"file": ("broken.pdf", b"not a pdf", "application/pdf")}
            response = client.post("/api/documents", files=files)
        self.assertEqual(response.status_code, 400)
        self.assertFalse((self.tmp / "documents" / "broken.pdf").exists())

    def test_documents_are_public_when_password_is_set(self):
        with patch("app.ingest_document", return_value={"source": "notes.txt", "chunks": 1}):
            client.post("/api/documents", files={"file": ("notes.txt", b"some notes", "text/plain")})
        with patch.object(config, "AUTH_REQUIRED", True), patch.object(config, "APP_PASSWORD", "secret"):
            self.assertEqual(client.get("/api/status").status_code, 401)
            self.assertEqual(client.get("/api/documents/notes.txt").status_code, 200)

    def test_invalid_session_id_is_bad_request(self):
        response = client.get("/api/chats/bad$id/messages", headers=USER_HEADERS)
        self.assertEqual(response.status_code, 400)

    def test_corrupt_history_is_service_unavailable(self):
        (self.tmp / "chat_history").mkdir(parents=True, exist_ok=True)
        (self.tmp / "chat_history" / "user-1.json").write_text("{not json", encoding="utf-8")
        self.assertEqual(client.get("/api/chats/session-1/messages", headers=USER_HEADERS).status_code, 503)
        self.assertEqual(client.post("/api/chats/session-1/cleanup", headers=USER_HEADERS).status_code, 503)
        self.assertEqual(client.get("/api/chats", headers=USER_HEADERS).status_code, 503)

    def test_status(self):
        response = client.get("/api/status")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["history_backend"], "file")


if __name__ == "__main__":
    unittest.main()
