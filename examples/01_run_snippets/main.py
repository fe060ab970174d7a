"""
Run Snippets - Submit code and poll for the result
===================================================

Submits a handful of snippets the way a "Run" button would, then polls
each one with a cursor until its result arrives. Shows every outcome the
service can report: normal completion, a runtime error, a wall-clock
timeout, a memory limit hit and a rejected language.

Requirements: requests

Usage:
    1. Start the service: sandpit start --port 8000
    2. Run this script: python main.py
"""

import time
import uuid

import requests

SERVER_URL = "http://localhost:8000"

SNIPPETS = [
    ("hello", "python", "print('Hello from the sandbox!')", None),
    ("stdin", "python", "name = input()\nprint(f'Hi {name}')", "Ada\n"),
    ("error", "python", "def f(n):\n    return 1 / n\n\nf(0)\n", None),
    ("timeout", "python", "while True:\n    pass\n", None),
    ("memory", "python", "blob = bytearray(4 * 1024 ** 3)", None),
]


def submit(http, language, source, stdin=None):
    response = http.post(
        f"{SERVER_URL}/execute",
        json={"language": language, "source": source, "stdin": stdin},
    )
    if response.status_code != 202:
        detail = response.json()["detail"]
        retry = response.headers.get("Retry-After")
        suffix = f" (retry after {retry}s)" if retry else ""
        raise RuntimeError(f"{response.status_code} {detail['error']}: {detail['message']}{suffix}")
    return response.json()["request_id"]


def wait_for_result(http, request_id, timeout=60):
    cursor = 0
    deadline = time.time() + timeout
    while time.time() < deadline:
        page = http.get(f"{SERVER_URL}/execute/{request_id}", params={"cursor": cursor}).json()
        for event in page["events"]:
            if event["type"] in ("stdout", "stderr"):
                print(f"    [{event['type']}] {event['data']!r}")
        cursor = page["next_cursor"]
        if page["result"] is not None:
            return page["result"]
        if page["queue_position"]:
            print(f"    queued, position {page['queue_position']}")
        time.sleep(0.2)
    raise TimeoutError(f"No result for {request_id}")


def main():
    http = requests.Session()
    http.headers["X-Session-Id"] = f"example-{uuid.uuid4().hex[:8]}"

    print("Available runtimes:")
    for runtime in http.get(f"{SERVER_URL}/runtimes").json()["runtimes"]:
        print(f"  {runtime['language']}: {runtime['wall_clock_limit']}s, "
              f"{runtime['memory_limit_bytes'] // (1024 * 1024)} MiB")

    for name, language, source, stdin in SNIPPETS:
        print(f"\n[{name}] submitting {language} snippet")
        request_id = submit(http, language, source, stdin)
        result = wait_for_result(http, request_id)
        print(f"    -> {result['outcome']} exit={result['exit_code']} "
              f"in {result['duration']:.3f}s truncated={result['truncated']}")

    print("\n[ruby] submitting an unsupported language")
    try:
        submit(http, "ruby", "puts 1")
    except RuntimeError as e:
        print(f"    -> {e}")


if __name__ == "__main__":
    main()
