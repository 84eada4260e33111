import asyncio
import json
import re
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock

from lifekline.bazi_context import BaziInput
from lifekline.kline_engine import ChartPoint, MIN_WICK
from lifekline.llm_config import LLMSettings
from lifekline.llm_executor import LLMPayloadError
import lifekline.llm_service as llm_service

_CHUNK_RE = re.compile(r"ages (\d+) to (\d+)")


def _settings(**overrides) -> LLMSettings:
    values = {
        "api_key": "sk-test",
        "base_url": "https://api.deepseek.com",
        "model": "deepseek-chat",
        "timeout_sec": 5.0,
        "max_retries": 2,
        "backoff_base_sec": 0.0,
        "retry_parse_errors": False,
    }
    values.update(overrides)
    return LLMSettings(**values)


def _bazi() -> BaziInput:
    return BaziInput(
        name="Lin",
        gender="Male",
        birth_year=1990,
        year_pillar="庚午",
        month_pillar="戊寅",
        day_pillar="甲子",
        hour_pillar="丙寅",
        start_age=3,
        first_da_yun="己卯",
    )


def _response(content: str) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _summary_json() -> str:
    return json.dumps(
        {
            "bazi": ["庚午", "戊寅", "甲子", "丙寅"],
            "summary": "Late bloomer with a strong metal core.",
            "summaryScore": 8,
            "wealth": "Wealth arrives through partnerships.",
            "wealthScore": 7,
            "cryptoStyle": "spot accumulation",
            "chartPoints": [],
        },
        ensure_ascii=False,
    )


def _chunk_json(start: int, end: int) -> str:
    points = []
    for age in range(start, end + 1):
        # Each chunk starts from its own baseline so boundaries disagree.
        open_ = 30 + start + (age % 5) * 3
        close = open_ + (4 if age % 2 else -3)
        points.append(
            {
                "age": age,
                "year": 1989 + age,
                "daYun": "己卯",
                "ganZhi": "庚午",
                "open": open_,
                "close": close,
                "high": max(open_, close) + 3,
                "low": min(open_, close) - 1,
                "score": close,
                "reason": "metal year",
            }
        )
    return json.dumps({"chartPoints": points}, ensure_ascii=False)


def _fake_client(overrides=None):
    """Fake chat client routed by system prompt; overrides map label -> list of outcomes."""
    overrides = {k: list(v) for k, v in (overrides or {}).items()}
    calls: dict[str, int] = {}

    def create(**kwargs):
        system = kwargs["messages"][0]["content"]
        match = _CHUNK_RE.search(system)
        label = f"chunk_{match.group(1)}_{match.group(2)}" if match else "summary"
        calls[label] = calls.get(label, 0) + 1
        scripted = overrides.get(label)
        if scripted:
            outcome = scripted.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return _response(outcome)
        if match:
            return _response(_chunk_json(int(match.group(1)), int(match.group(2))))
        return _response(_summary_json())

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=AsyncMock(side_effect=create))))
    return client, calls


def _generate(client, settings=None):
    return asyncio.run(
        llm_service.generate_life_kline_report(
            async_client=client,
            bazi=_bazi(),
            settings=settings or _settings(),
            request_id="req-1",
            sleep=AsyncMock(),
        )
    )


class TestPayloadParsing(unittest.TestCase):
    def test_code_fences_are_stripped(self) -> None:
        payload = llm_service.parse_llm_json_payload('```json\n{"summary": "ok"}\n```')
        self.assertEqual(payload, {"summary": "ok"})

    def test_empty_non_object_and_invalid_json_are_rejected(self) -> None:
        for text in (None, "", "   ", "[1, 2]", "{not json", "Here is your chart: {}"):
            with self.assertRaises(LLMPayloadError):
                llm_service.parse_llm_json_payload(text)

    def test_chunk_points_use_camel_case_wire_names(self) -> None:
        points = llm_service.parse_chart_chunk(json.loads(_chunk_json(1, 3)), 1, 3)
        self.assertEqual([p.age for p in points], [1, 2, 3])
        self.assertEqual(points[0].da_yun, "己卯")
        self.assertEqual(points[0].to_payload()["ganZhi"], "庚午")

    def test_chunk_without_points_array_is_rejected(self) -> None:
        with self.assertRaises(LLMPayloadError):
            llm_service.parse_chart_chunk({"points": []}, 1, 25)

    def test_chunk_with_invalid_point_is_rejected(self) -> None:
        bad = {"chartPoints": [{"age": 1, "year": 1990, "open": "high", "close": 1, "high": 2, "low": 0}]}
        with self.assertRaises(LLMPayloadError):
            llm_service.parse_chart_chunk(bad, 1, 25)

    def test_summary_keeps_unknown_fields_and_rejects_bad_types(self) -> None:
        summary = llm_service.parse_summary_payload({"summary": "s", "summaryScore": "9", "luckyColor": "red"})
        self.assertEqual(summary["summaryScore"], 9.0)
        self.assertEqual(summary["luckyColor"], "red")
        with self.assertRaises(LLMPayloadError):
            llm_service.parse_summary_payload({"bazi": "not-a-list"})

    def test_summary_scores_written_as_text_are_read_leniently(self) -> None:
        summary = llm_service.parse_summary_payload(
            {"summary": "s", "summaryScore": "8/10", "wealthScore": "about 6.5 points", "healthScore": "high"}
        )
        self.assertEqual(summary["summaryScore"], 8.0)
        self.assertEqual(summary["wealthScore"], 6.5)
        self.assertNotIn("healthScore", summary)

    def test_non_finite_summary_scores_are_dropped(self) -> None:
        summary = llm_service.parse_summary_payload(json.loads('{"summary": "s", "summaryScore": NaN, "familyScore": Infinity}'))
        self.assertEqual(summary, {"bazi": [], "summary": "s"})

    def test_null_labels_and_reason_are_read_as_empty(self) -> None:
        payload = json.loads(_chunk_json(1, 25))
        payload["chartPoints"][0].update({"reason": None, "daYun": None, "ganZhi": None})
        points = llm_service.parse_chart_chunk(payload, 1, 25)
        self.assertEqual(len(points), 25)
        self.assertEqual((points[0].da_yun, points[0].gan_zhi, points[0].reason), ("", "", ""))
        self.assertEqual(points[1].reason, "metal year")

    def test_non_finite_prices_are_rejected(self) -> None:
        for literal in ("NaN", "Infinity", "-Infinity"):
            text = _chunk_json(1, 25).replace('"high": ', f'"high": {literal}, "unused": ', 1)
            with self.assertRaises(LLMPayloadError, msg=literal):
                llm_service.parse_chart_chunk(llm_service.parse_llm_json_payload(text), 1, 25)


class TestAssembleReport(unittest.TestCase):
    def test_chart_points_override_summary_field(self) -> None:
        point = ChartPoint(age=1, year=1990, open=50, close=52, high=55, low=45, score=52)
        report = llm_service.assemble_report({"summary": "s", "chartPoints": []}, [point])
        self.assertEqual(report["summary"], "s")
        self.assertEqual(len(report["chartPoints"]), 1)
        self.assertEqual(report["chartPoints"][0]["daYun"], "")


class TestGenerateLifeKlineReport(unittest.TestCase):
    def test_full_pipeline_produces_continuous_bounded_series(self) -> None:
        client, calls = _fake_client()
        report = _generate(client)

        self.assertEqual(calls, {"summary": 1, "chunk_1_25": 1, "chunk_26_50": 1, "chunk_51_75": 1, "chunk_76_100": 1})
        self.assertEqual(report["summary"], "Late bloomer with a strong metal core.")
        self.assertEqual(report["wealthScore"], 7)
        points = report["chartPoints"]
        self.assertEqual([p["age"] for p in points], list(range(1, 101)))
        for prev, cur in zip(points, points[1:]):
            self.assertEqual(cur["open"], prev["close"])
        for p in points:
            self.assertGreaterEqual(p["low"], 13)
            self.assertLessEqual(p["high"], 97)
            self.assertGreaterEqual(p["high"], max(p["open"], p["close"]) + MIN_WICK)
            self.assertLessEqual(p["low"], min(p["open"], p["close"]) - MIN_WICK)
            self.assertEqual(p["score"], p["close"])

    def test_requests_ask_for_json_objects(self) -> None:
        client, _calls = _fake_client()
        _generate(client)
        for call in client.chat.completions.create.await_args_list:
            self.assertEqual(call.kwargs["response_format"], {"type": "json_object"})
            self.assertEqual(call.kwargs["model"], "deepseek-chat")
            self.assertIn("庚午 戊寅 甲子 丙寅", call.kwargs["messages"][1]["content"])

    def test_single_chunk_failure_aborts_generation(self) -> None:
        failures = [ConnectionResetError(f"reset-{n}") for n in range(1, 4)]
        client, calls = _fake_client({"chunk_51_75": failures})
        with self.assertRaises(llm_service.KLineGenerationError) as ctx:
            _generate(client)
        self.assertIn("Generation aborted", str(ctx.exception))
        self.assertIs(ctx.exception.__cause__, failures[2])
        self.assertEqual(calls["chunk_51_75"], 3)

    def test_transient_chunk_failure_recovers_within_budget(self) -> None:
        client, calls = _fake_client({"chunk_26_50": [ConnectionResetError("reset")]})
        report = _generate(client)
        self.assertEqual(len(report["chartPoints"]), 100)
        self.assertEqual(calls["chunk_26_50"], 2)

    def test_summary_failure_aborts_generation(self) -> None:
        client, calls = _fake_client({"summary": [RuntimeError("401 invalid api key")]})
        with self.assertRaises(llm_service.KLineGenerationError):
            _generate(client)
        self.assertEqual(calls["summary"], 1)

    def test_malformed_chunk_is_not_retried_by_default(self) -> None:
        client, calls = _fake_client({"chunk_1_25": ["not json at all", _chunk_json(1, 25)]})
        with self.assertRaises(llm_service.KLineGenerationError) as ctx:
            _generate(client)
        self.assertIsInstance(ctx.exception.__cause__, LLMPayloadError)
        self.assertEqual(calls["chunk_1_25"], 1)

    def test_non_finite_chunk_value_aborts_generation_cleanly(self) -> None:
        nan_chunk = _chunk_json(1, 25).replace('"high": ', '"high": NaN, "unused": ', 1)
        client, calls = _fake_client({"chunk_1_25": [nan_chunk]})
        with self.assertRaises(llm_service.KLineGenerationError) as ctx:
            _generate(client)
        self.assertIsInstance(ctx.exception.__cause__, LLMPayloadError)
        self.assertEqual(calls["chunk_1_25"], 1)

    def test_malformed_chunk_is_retried_when_policy_allows(self) -> None:
        client, calls = _fake_client({"chunk_1_25": ["not json at all", _chunk_json(1, 25)]})
        report = _generate(client, _settings(retry_parse_errors=True))
        self.assertEqual(len(report["chartPoints"]), 100)
        self.assertEqual(calls["chunk_1_25"], 2)

    def test_missing_client_is_a_generation_failure(self) -> None:
        with self.assertRaises(llm_service.KLineGenerationError):
            _generate(None)

    def test_audit_events_are_emitted_per_request(self) -> None:
        client, _calls = _fake_client()
        with self.assertLogs("llm_audit", level="INFO") as logs:
            _generate(client)
        events = [json.loads(record.getMessage()) for record in logs.records]
        self.assertEqual(len(events), 5)
        self.assertTrue(all(e["status"] == "ok" and e["attempts"] == 1 for e in events))
        self.assertEqual({e["request_id"] for e in events}, {"req-1"})


if __name__ == "__main__":
    unittest.main()
