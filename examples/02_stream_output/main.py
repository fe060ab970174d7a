"""
Stream Output - Watch a snippet's output live over a WebSocket
===============================================================

Submits a slow snippet that prints a line every half second and follows
it on the stream endpoint. Output chunks arrive as they are produced,
followed by one result event, which the client acknowledges.

Requirements: requests, websocket-client

Usage:
    1. Start the service: sandpit start --port 8000
    2. Run this script: python main.py
"""

import json

import requests
import websocket

SERVER_URL = "http://localhost:8000"
WS_URL = "ws://localhost:8000"

SOURCE = """
import sys, time
for i in range(5):
    print(f"step {i}")
    time.sleep(0.5)
print("done", file=sys.stderr)
"""


def main():
    response = requests.post(
        f"{SERVER_URL}/execute",
        json={"language": "python", "source": SOURCE},
        headers={"X-Session-Id": "stream-example"},
    )
    response.raise_for_status()
    request_id = response.json()["request_id"]
    print(f"Submitted {request_id}, streaming...")

    ws = websocket.create_connection(f"{WS_URL}/execute/{request_id}/stream", timeout=60)
    try:
        while True:
            event = json.loads(ws.recv())
            if event["type"] == "result":
                print(f"Result: {event['outcome']} exit={event['exit_code']} in {event['duration']}s")
                ws.send(json.dumps({"type": "ack"}))
                break
            print(f"[{event['seq']:>3} {event['type']}] {event['data']}", end="")
    finally:
        ws.close()


if __name__ == "__main__":
    main()
