import argparse
import json
import logging
import time
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator

from websocket import WebSocketConnectionClosedException, create_connection


def setup_client_logging() -> logging.Logger:
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("crmrelay.cli")
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    logger.propagate = False
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    fh = RotatingFileHandler(logs_dir / "client.log", maxBytes=2_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger


def build_envelope(content: str, session_id: str) -> Dict[str, str]:
    """Wrap user input in the inbound message envelope."""
    return {
        "messageId": f"cli-{int(time.time() * 1000)}",
        "content": content,
        "sessionId": session_id,
        "type": "USER",
    }


def format_chunk(chunk: Dict[str, Any]) -> str:
    """Render one outbound chunk for the terminal."""
    kind = chunk.get("type")
    content = chunk.get("content") or ""
    if kind == "content":
        return content
    if kind == "tool_call":
        return f"\n[{content}]\n"
    if kind == "tool_result":
        try:
            result = json.loads(content)
        except json.JSONDecodeError:
            return f"[tool result] {content}\n"
        if result.get("status") == "success":
            return f"[tool result] {json.dumps(result.get('data'), indent=2)}\n"
        return f"[tool failed] {result.get('error')}\n"
    if kind == "error":
        return f"\n[error] {content}\n"
    return ""


def turn_chunks(ws: Any) -> Iterator[Dict[str, Any]]:
    """Yield chunks received on ``ws`` until the turn ends.

    A turn ends on its final chunk, or on an error chunk that is not tied to
    a tool call. A failed follow-up is tagged with its toolCallId and is
    still followed by the turn's final chunk.
    """
    while True:
        payload = json.loads(ws.recv())
        yield payload
        kind = payload.get("type")
        if kind == "final" or (kind == "error" and not payload.get("toolCallId")):
            return


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Interactive client for the CRM relay")
    parser.add_argument("--url", default="ws://localhost:3000/ws")
    parser.add_argument("--session-id", default=uuid.uuid4().hex[:8])
    args = parser.parse_args(argv)

    logger = setup_client_logging()
    url = f"{args.url.rstrip('/')}/{args.session_id}"
    logger.info("Connecting ws_url=%s session_id=%s", url, args.session_id)
    ws = create_connection(url, timeout=120)
    print(f"Connected to {url}. Ctrl+C to quit.")
    try:
        while True:
            try:
                line = input("Enter message> ").strip()
            except (EOFError, KeyboardInterrupt):
                print("\nClosing connection...")
                return
            if not line:
                continue
            ws.send(json.dumps(build_envelope(line, args.session_id)))
            for chunk in turn_chunks(ws):
                print(format_chunk(chunk), end="", flush=True)
            print()
    except WebSocketConnectionClosedException:
        logger.error("WebSocket connection closed by server")
        print("WebSocket connection closed.")
    finally:
        ws.close()


if __name__ == "__main__":
    main()
