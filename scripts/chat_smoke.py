#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass
class Scenario:
  name: str
  message: str
  stream: bool
  authenticated: bool


class ScriptedStream:
  def __init__(self, chunks: list[str]) -> None:
    self._chunks = chunks

  def __iter__(self):
    yield from self._chunks

  def close(self) -> None:
    return None


class ScriptedModel:
  """Deterministic stand-in for the model bridge so smoke runs need no API key."""

  model = "scripted"

  def ensure_verified(self):
    from consult_core import VerificationResult

    return VerificationResult(ok=True, error=None, model=self.model)

  def _reply(self, prompt: str) -> str:
    last_line = prompt.rsplit("\n", 1)[-1]
    return f"Scripted guidance for: {last_line[:120]}"

  def generate_text(self, prompt: str, **kwargs: Any) -> str:
    return self._reply(prompt)

  def open_stream(self, prompt: str) -> ScriptedStream:
    reply = self._reply(prompt)
    middle = len(reply) // 2
    return ScriptedStream([reply[:middle], reply[middle:]])


class ScriptedIdentity:
  configured = True

  def resolve(self, authorization, jar):
    from consult_core import AuthUser, bearer_token

    if bearer_token(authorization) == "smoke-user":
      return AuthUser(id="smoke-user", email="smoke@example.test", email_confirmed_at=None)
    return None


def parse_records(payload_text: str) -> list[dict[str, Any]]:
  records: list[dict[str, Any]] = []
  for raw_line in payload_text.splitlines():
    line = raw_line.strip()
    if not line:
      continue
    try:
      records.append(json.loads(line))
    except json.JSONDecodeError:
      records.append({"type": "unparseable", "raw": line[:200]})
  return records


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  live_model = os.getenv("CONSULT_SMOKE_LIVE_MODEL", "false").lower() in {"1", "true", "yes"}
  scratch_dir = tempfile.mkdtemp(prefix="consult-smoke-")
  os.environ["CONSULT_DB_PATH"] = str(Path(scratch_dir) / "smoke.sqlite")

  from fastapi.testclient import TestClient

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)
  if not live_model:
    backend_module.container.model = ScriptedModel()
  backend_module.container.identity = ScriptedIdentity()

  scenarios = [
    Scenario(name="Anonymous single reply", message="I have had a mild headache since noon.", stream=False, authenticated=False),
    Scenario(name="Anonymous streamed reply", message="Is it safe to take ibuprofen with food?", stream=True, authenticated=False),
    Scenario(name="Signed-in streamed reply", message="My child has a 38.5C fever.", stream=True, authenticated=True),
    Scenario(name="Signed-in single reply", message="What should I watch for overnight?", stream=False, authenticated=True),
  ]

  results: list[dict[str, Any]] = []

  with TestClient(backend_module.app) as client:
    status_response = client.get("/chat")
    for scenario in scenarios:
      headers = {"Authorization": "Bearer smoke-user"} if scenario.authenticated else {}
      response = client.post(
        "/chat",
        headers=headers,
        json={
          "messages": [{"role": "user", "content": scenario.message}],
          "context": {"allergies": ["penicillin"], "medications": [], "conditions": []},
          "stream": scenario.stream,
        },
      )

      scenario_result: dict[str, Any] = {
        "name": scenario.name,
        "stream": scenario.stream,
        "authenticated": scenario.authenticated,
        "status_code": response.status_code,
      }
      if response.status_code != 200:
        scenario_result["pass"] = False
        scenario_result["error"] = f"/chat returned {response.status_code}: {response.text[:240]}"
        results.append(scenario_result)
        continue

      if scenario.stream:
        records = parse_records(response.text)
        scenario_result["record_types"] = [record.get("type") for record in records]
        final = records[-1] if records and records[-1].get("type") == "final" else None
        reply = final.get("reply") if final else None
        consultation_id = final.get("consultation_id") if final else None
        deltas = "".join(record.get("delta", "") for record in records if record.get("type") == "delta")
        scenario_result["pass"] = final is not None and reply == deltas
        if final is None:
          scenario_result["error"] = "Stream ended without a final record."
      else:
        body = response.json()
        reply = body.get("reply")
        consultation_id = body.get("consultation_id")
        scenario_result["pass"] = isinstance(reply, str) and bool(reply)

      scenario_result["reply_preview"] = (reply or "")[:240]
      scenario_result["consultation_id"] = consultation_id
      if scenario.authenticated and scenario_result["pass"]:
        history = client.get(f"/consultations/{consultation_id}/messages", headers=headers)
        roles = [item.get("role") for item in history.json().get("items", [])]
        scenario_result["persisted_roles"] = roles
        if roles != ["user", "assistant"]:
          scenario_result["pass"] = False
          scenario_result["error"] = f"Expected persisted user/assistant pair, got {roles!r}"
      elif not scenario.authenticated and consultation_id is not None:
        scenario_result["pass"] = False
        scenario_result["error"] = "Anonymous turn returned a consultation id."

      results.append(scenario_result)

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Chat Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- Live model: `{live_model}`",
    f"- Availability probe: `{status_response.status_code}` `{status_response.text[:200]}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Stream: `{item.get('stream')}`")
    report_lines.append(f"- Authenticated: `{item.get('authenticated')}`")
    report_lines.append(f"- Status code: `{item.get('status_code')}`")
    report_lines.append(f"- Consultation id: `{item.get('consultation_id')}`")
    if item.get("record_types"):
      report_lines.append(f"- Record types: `{item['record_types']}`")
    if item.get("persisted_roles") is not None:
      report_lines.append(f"- Persisted roles: `{item['persisted_roles']}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    preview = item.get("reply_preview") or ""
    if preview:
      report_lines.append(f"- Reply preview: `{preview}`")
    report_lines.append("")

  report_path = repo_root / "CHAT_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} scenarios.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
