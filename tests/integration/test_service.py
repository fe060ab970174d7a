"""
Integration tests for a running Sandpit service.

Fixtures live in conftest.py; every call goes to ``session.base_url``.
"""
import json
import time
import uuid

import pytest
import websocket

RESULT_TIMEOUT = 30


def submit(session, source, language="python", stdin=None):
    response = session.post(
        f"{session.base_url}/execute",
        json={"language": language, "source": source, "stdin": stdin},
        timeout=5,
    )
    assert response.status_code == 202, response.text
    return response.json()["request_id"]


def poll_result(session, request_id):
    cursor = 0
    events = []
    deadline = time.monotonic() + RESULT_TIMEOUT
    while time.monotonic() < deadline:
        page = session.get(f"{session.base_url}/execute/{request_id}", params={"cursor": cursor}, timeout=5).json()
        events.extend(page["events"])
        cursor = page["next_cursor"]
        if page["result"] is not None:
            return page["result"], events
        time.sleep(0.1)
    raise AssertionError(f"No result for {request_id} within {RESULT_TIMEOUT}s")


@pytest.mark.integration
class TestExecution:
    def test_print(self, session):
        result, events = poll_result(session, submit(session, "print(1+1)"))
        assert result["outcome"] == "Completed"
        assert result["stdout"] == "2\n"
        assert result["exit_code"] == 0
        assert events[-1]["type"] == "result"

    def test_result_is_delivered_once(self, session):
        request_id = submit(session, "print('once')")
        poll_result(session, request_id)
        assert session.get(f"{session.base_url}/execute/{request_id}", timeout=5).status_code == 404

    def test_stdin(self, session):
        result, _ = poll_result(session, submit(session, "print(input()[::-1])", stdin="sandpit\n"))
        assert result["stdout"] == "tipdnas\n"

    def test_runtime_error(self, session):
        result, _ = poll_result(session, submit(session, "raise ValueError('boom')"))
        assert result["outcome"] == "RuntimeError"
        assert "ValueError: boom" in result["stderr"]

    def test_infinite_loop_times_out(self, session):
        result, _ = poll_result(session, submit(session, "while True:\n    pass\n"))
        assert result["outcome"] == "TimedOut"
        assert result["exit_code"] is None

    def test_memory_bomb(self, session):
        result, _ = poll_result(session, submit(session, "x = 'a' * (10 ** 10)"))
        assert result["outcome"] == "ResourceExceeded"

    def test_no_state_between_requests(self, session):
        poll_result(session, submit(session, "open('sentinel.txt', 'w').write('leak')"))
        result, _ = poll_result(session, submit(session, "import os\nprint(os.path.exists('sentinel.txt'))"))
        assert result["stdout"] == "False\n"


@pytest.mark.integration
class TestRejections:
    def test_unknown_language(self, session):
        response = session.post(f"{session.base_url}/execute", json={"language": "ruby", "source": "puts 1"}, timeout=5)
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "InvalidLanguage"

    def test_unknown_request(self, session):
        assert session.get(f"{session.base_url}/execute/{uuid.uuid4().hex}", timeout=5).status_code == 404

    def test_cancel(self, session):
        request_id = submit(session, "import time\ntime.sleep(60)\n")
        response = session.delete(f"{session.base_url}/execute/{request_id}", timeout=5)
        assert response.status_code == 200
        result, _ = poll_result(session, request_id)
        assert result["outcome"] == "Cancelled"


@pytest.mark.integration
class TestStreaming:
    def test_stream_events(self, session):
        request_id = submit(session, "for i in range(3):\n    print(i)\n")
        stream_url = session.base_url.replace("http", "ws", 1) + f"/execute/{request_id}/stream"
        ws = websocket.create_connection(stream_url, timeout=RESULT_TIMEOUT)
        try:
            events = []
            while not events or events[-1]["type"] != "result":
                events.append(json.loads(ws.recv()))
            ws.send(json.dumps({"type": "ack"}))
        finally:
            ws.close()

        assert events[-1]["outcome"] == "Completed"
        assert "".join(e["data"] for e in events if e["type"] == "stdout") == "0\n1\n2\n"
        seqs = [e["seq"] for e in events if e["type"] in ("stdout", "stderr")]
        assert seqs == sorted(seqs)
