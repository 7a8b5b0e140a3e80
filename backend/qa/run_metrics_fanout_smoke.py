import asyncio
import json
import os
import socket
import subprocess
import sys
import time
import uuid
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.metrics.aggregator import SessionMetricsAggregator  # noqa: E402
from app.metrics.client import RealtimeMetricsClient  # noqa: E402

HOST = "127.0.0.1"
PORT = int(os.getenv("SMOKE_PORT", "9121"))
SUBSCRIBERS = max(1, int(os.getenv("SMOKE_SUBSCRIBERS", "3")))
REPORT_DIR = ROOT / "qa" / "reports"
REPORT_PATH = REPORT_DIR / "metrics_fanout_smoke_report.json"


def _wait_port(host: str, port: int, timeout_sec: float = 20.0) -> bool:
    end_at = time.time() + timeout_sec
    while time.time() < end_at:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(0.5)
            if sock.connect_ex((host, port)) == 0:
                return True
        time.sleep(0.2)
    return False


def _start_backend_instance(port: int) -> subprocess.Popen:
    env = dict(os.environ)
    env["QA_MODE"] = "true"
    env["ENV"] = "development"
    env["RATE_LIMIT_ENABLED"] = "false"
    env["METRICS_STREAM_HEARTBEAT_SEC"] = "2"

    cmd = [
        sys.executable,
        "-m",
        "uvicorn",
        "app.main:app",
        "--host",
        HOST,
        "--port",
        str(port),
    ]
    return subprocess.Popen(
        cmd,
        cwd=str(ROOT),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )


async def _collect(client: RealtimeMetricsClient, session_id: str, seen: list[str], ready: asyncio.Event) -> list[dict]:
    received = []
    async for message in client.stream(session_id):
        received.append(message)
        seen.append(str(message.get("type") or ""))
        if message.get("type") == "connected":
            ready.set()
    return received


async def _run_smoke() -> dict:
    session_id = f"smoke-{uuid.uuid4()}"
    aggregator = SessionMetricsAggregator(session_id)
    for index in range(6):
        aggregator.add_sample({
            "emotions": {"happy": 0.6, "neutral": 0.3},
            "eyeContact": index % 3 != 0,
            "confidence": 0.7,
        })
    snapshot = aggregator.get_snapshot()

    async with RealtimeMetricsClient(base_url=f"http://{HOST}:{PORT}") as client:
        seen_by_stream: list[list[str]] = [[] for _ in range(SUBSCRIBERS)]
        ready_events = [asyncio.Event() for _ in range(SUBSCRIBERS)]
        tasks = [
            asyncio.create_task(_collect(client, session_id, seen_by_stream[i], ready_events[i]))
            for i in range(SUBSCRIBERS)
        ]
        await asyncio.wait_for(asyncio.gather(*(event.wait() for event in ready_events)), timeout=10.0)

        active = await client.publish(session_id, snapshot)
        await asyncio.sleep(0.5)
        await client.end_session(session_id)
        results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=10.0)

    delivered = [
        sum(1 for message in messages if message.get("type") == "metrics")
        for messages in results
    ]
    ended = [bool(messages) and messages[-1].get("type") == "session_ended" for messages in results]
    ok = active == SUBSCRIBERS and all(count == 1 for count in delivered) and all(ended)

    return {
        "ok": ok,
        "session_id": session_id,
        "subscribers": SUBSCRIBERS,
        "active_connections_reported": active,
        "metrics_delivered": delivered,
        "session_ended_seen": ended,
        "seen_by_stream": seen_by_stream,
    }


def _stop_process(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=6)
    except subprocess.TimeoutExpired:
        proc.kill()


def main() -> None:
    REPORT_DIR.mkdir(parents=True, exist_ok=True)
    started = time.time()
    proc = _start_backend_instance(PORT)

    try:
        if not _wait_port(HOST, PORT, timeout_sec=25):
            report = {
                "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                "duration_sec": round(time.time() - started, 2),
                "all_pass": False,
                "error": "Backend instance did not become ready",
            }
            REPORT_PATH.write_text(json.dumps(report, indent=2), encoding="utf-8")
            print(json.dumps(report, indent=2))
            sys.exit(1)

        result = asyncio.run(_run_smoke())

        report = {
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "duration_sec": round(time.time() - started, 2),
            "all_pass": bool(result.get("ok")),
            "result": result,
            "instance": {
                "port": PORT,
                "return_code": proc.poll(),
            },
        }

        REPORT_PATH.write_text(json.dumps(report, indent=2), encoding="utf-8")
        print(json.dumps(report, indent=2))

        if not report["all_pass"]:
            sys.exit(1)
    finally:
        _stop_process(proc)


if __name__ == "__main__":
    main()
