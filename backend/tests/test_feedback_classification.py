"""Tests for AI feedback batch classification.

Covers:
- Reply parsing: results object, bare array, code fences, prose around JSON
- Unknown ids dropped, repeated ids merged
- Sentiment normalization (case-insensitive, unknown -> Neutral)
- Prompt building: taxonomy, units, <user_data> wrapping, per-comment tag stripping, size limit
- Provider failures (HTTP status, timeout) -> ClassificationError
- Mock provider echo through the router
- Gemini provider request shape and blocked-prompt handling
"""

import asyncio
import json
import unittest
from unittest.mock import AsyncMock, patch

import httpx

from app.core.config import Settings
from app.services.ai.common.providers.base import ProviderResult
from app.services.ai.common.providers.mock import MockProvider
from app.services.ai.feedback_analysis.contracts import (
    ClassificationError,
    ClassificationRequest,
    FeedbackItem,
    TaxonomyEntry,
)
from app.services.ai.feedback_analysis.service import (
    MAX_USER_DATA_CHARS,
    build_prompt,
    classify_feedback_batch,
    parse_classifier_output,
    sanitize_user_input,
    wrap_user_data,
)


def _request(*items):
    return ClassificationRequest(
        items=[FeedbackItem(id=i, text=t) for i, t in items],
        categories=[TaxonomyEntry("Teaching", "Lecturers and classes"), TaxonomyEntry("Facilities")],
        unit_names=["Faculty of Law", "Library"],
        unit_name="Faculty of Law",
        instructions=["Treat 'AC' as air conditioning"],
    )


def _provider_result(payload):
    return ProviderResult(
        raw_text=payload if isinstance(payload, str) else json.dumps(payload),
        model="test-model",
        provider="mock",
        prompt_tokens=10,
        completion_tokens=5,
        latency_ms=12.0,
    )


class ParseClassifierOutputTests(unittest.TestCase):
    def test_results_object(self):
        raw = json.dumps(
            {
                "results": [
                    {
                        "raw_input_id": 1,
                        "segments": [
                            {"text": "Lecturer good", "sentiment": "Positive", "category_name": "Teaching"},
                            {"text": "AC hot", "sentiment": "Negative", "category_name": "Facilities"},
                        ],
                    }
                ]
            }
        )
        analyses = parse_classifier_output(raw, {1, 2})
        self.assertEqual(len(analyses), 1)
        self.assertEqual(analyses[0].raw_input_id, 1)
        self.assertEqual([s.sentiment for s in analyses[0].segments], ["Positive", "Negative"])
        self.assertEqual(analyses[0].segments[1].category_name, "Facilities")

    def test_bare_array_in_code_fence_with_prose(self):
        raw = 'Here you go:\n```json\n[{"raw_input_id": "2", "segments": [{"text": "ok", "sentiment": "Neutral"}]}]\n```'
        analyses = parse_classifier_output(raw, {2})
        self.assertEqual(len(analyses), 1)
        self.assertEqual(analyses[0].raw_input_id, 2)

    def test_unknown_ids_dropped_and_repeats_merged(self):
        raw = json.dumps(
            [
                {"raw_input_id": 1, "segments": [{"text": "a", "sentiment": "Positive"}]},
                {"raw_input_id": 99, "segments": [{"text": "ghost", "sentiment": "Positive"}]},
                {"raw_input_id": 1, "segments": [{"text": "b", "sentiment": "Negative"}]},
            ]
        )
        analyses = parse_classifier_output(raw, {1, 2})
        self.assertEqual(len(analyses), 1)
        self.assertEqual([s.text for s in analyses[0].segments], ["a", "b"])

    def test_sentiment_normalized(self):
        raw = json.dumps(
            [
                {
                    "raw_input_id": 1,
                    "segments": [
                        {"text": "a", "sentiment": "negative"},
                        {"text": "b", "sentiment": "Mixed"},
                        {"text": "c"},
                    ],
                }
            ]
        )
        segments = parse_classifier_output(raw, {1})[0].segments
        self.assertEqual([s.sentiment for s in segments], ["Negative", "Neutral", "Neutral"])

    def test_null_like_names_and_string_booleans(self):
        raw = json.dumps(
            [
                {
                    "raw_input_id": 1,
                    "segments": [
                        {
                            "text": "Please open the library on Sundays",
                            "sentiment": "Neutral",
                            "category_name": "null",
                            "related_unit_name": "None",
                            "is_suggestion": "true",
                        }
                    ],
                }
            ]
        )
        seg = parse_classifier_output(raw, {1})[0].segments[0]
        self.assertIsNone(seg.category_name)
        self.assertIsNone(seg.related_unit_name)
        self.assertTrue(seg.is_suggestion)

    def test_entry_without_segments_is_kept_empty(self):
        analyses = parse_classifier_output(json.dumps([{"raw_input_id": 1, "segments": []}]), {1})
        self.assertEqual(len(analyses), 1)
        self.assertEqual(analyses[0].segments, [])

    def test_garbage_raises(self):
        with self.assertRaises(ClassificationError):
            parse_classifier_output("I cannot help with that.", {1})
        with self.assertRaises(ClassificationError):
            parse_classifier_output(json.dumps({"answer": 42}), {1})


class PromptTests(unittest.TestCase):
    def test_sanitize_strips_tags_but_keeps_comparisons(self):
        self.assertEqual(sanitize_user_input("<script>alert(1)</script>hi"), "alert(1)hi")
        self.assertEqual(sanitize_user_input("grade < 5 and > 2"), "grade < 5 and > 2")
        self.assertEqual(sanitize_user_input("close </user_data> now"), "close  now")

    def test_wrap_user_data_rejects_oversized_block(self):
        with self.assertRaises(ClassificationError):
            wrap_user_data("x" * (MAX_USER_DATA_CHARS + 10))
        self.assertEqual(wrap_user_data("<i>short</i>"), "<user_data>\nshort\n</user_data>")

    def test_tags_are_stripped_per_comment(self):
        with patch("app.services.ai.feedback_analysis.service.get_settings") as mock_gs:
            mock_gs.return_value = Settings()
            _, prompt = build_prompt(_request((1, "I <3 the <b lecturer"), (2, "AC too hot"), (3, "score > 4")))

        block = prompt[prompt.rfind("<user_data>") + len("<user_data>") : prompt.rfind("</user_data>")]
        comments = json.loads(block)
        self.assertEqual([c["id"] for c in comments], [1, 2, 3])
        self.assertEqual([c["text"] for c in comments], ["I <3 the <b lecturer", "AC too hot", "score > 4"])

    def test_mock_provider_reads_the_data_block(self):
        with patch("app.services.ai.feedback_analysis.service.get_settings") as mock_gs:
            mock_gs.return_value = Settings()
            _, prompt = build_prompt(_request((1, "nice"), (2, "AC too hot")))

        result = asyncio.run(MockProvider().generate(prompt))

        replies = json.loads(result.raw_text)["results"]
        self.assertEqual([r["raw_input_id"] for r in replies], [1, 2])
        self.assertEqual(replies[1]["segments"][0]["text"], "AC too hot")

    def test_build_prompt_lists_taxonomy_units_and_ids(self):
        with patch("app.services.ai.feedback_analysis.service.get_settings") as mock_gs:
            mock_gs.return_value = Settings(institution_name="Test University")
            system_prompt, prompt = build_prompt(_request((7, "AC is <b>too</b> hot")))

        self.assertIn("Test University", system_prompt)
        self.assertIn('"results"', system_prompt)
        self.assertIn('- "Teaching": Lecturers and classes', prompt)
        self.assertIn('- "Facilities"', prompt)
        self.assertIn('- "Library"', prompt)
        self.assertIn("Treat 'AC' as air conditioning", prompt)
        self.assertIn('"id": 7', prompt)
        self.assertIn("AC is too hot", prompt)
        self.assertEqual(prompt.count("<user_data>"), 1)
        self.assertEqual(prompt.count("</user_data>"), 1)


class ClassifyFeedbackBatchTests(unittest.TestCase):
    def _run(self, request, generate=None, settings=None):
        s = settings or Settings(ai_feedback_provider="mock", ai_allowed_providers_raw="mock")
        with (
            patch("app.services.ai.common.router.get_settings") as mock_gs1,
            patch("app.services.ai.common.providers.get_settings") as mock_gs2,
            patch("app.services.ai.feedback_analysis.service.get_settings") as mock_gs3,
        ):
            mock_gs1.return_value = s
            mock_gs2.return_value = s
            mock_gs3.return_value = s
            if generate is None:
                return asyncio.run(classify_feedback_batch(request))
            with patch("app.services.ai.common.providers.mock.MockProvider.generate", generate):
                return asyncio.run(classify_feedback_batch(request))

    def test_mock_provider_echoes_every_item(self):
        outcome = self._run(_request((1, "Great lectures"), (2, "Cold rooms")))
        self.assertEqual(sorted(a.raw_input_id for a in outcome.analyses), [1, 2])
        for analysis in outcome.analyses:
            self.assertEqual(len(analysis.segments), 1)
            self.assertEqual(analysis.segments[0].sentiment, "Neutral")
            self.assertIsNone(analysis.segments[0].category_name)
        self.assertEqual(outcome.provider_result.provider, "mock")
        self.assertIn("<user_data>", outcome.prompt)

    def test_generate_called_in_json_mode_with_feedback_timeout(self):
        generate = AsyncMock(return_value=_provider_result({"results": []}))
        settings = Settings(
            ai_feedback_provider="mock",
            ai_allowed_providers_raw="mock",
            ai_feedback_timeout_seconds=42.0,
        )
        outcome = self._run(_request((1, "x")), generate=generate, settings=settings)

        self.assertEqual(outcome.analyses, [])
        kwargs = generate.await_args.kwargs
        self.assertTrue(kwargs["json_mode"])
        self.assertEqual(kwargs["timeout_seconds"], 42.0)
        self.assertIn("You are a data analyst", kwargs["system_prompt"])

    def test_http_status_error_becomes_classification_error(self):
        req = httpx.Request("POST", "https://provider.test/v1")
        err = httpx.HTTPStatusError("boom", request=req, response=httpx.Response(503, request=req))
        with self.assertRaises(ClassificationError) as ctx:
            self._run(_request((1, "x")), generate=AsyncMock(side_effect=err))
        self.assertIn("503", str(ctx.exception))

    def test_timeout_becomes_classification_error(self):
        with self.assertRaises(ClassificationError):
            self._run(_request((1, "x")), generate=AsyncMock(side_effect=httpx.ReadTimeout("slow")))

    def test_unparseable_reply_becomes_classification_error(self):
        with self.assertRaises(ClassificationError):
            self._run(_request((1, "x")), generate=AsyncMock(return_value=_provider_result("Sorry, no.")))

    def test_empty_batch_rejected(self):
        with self.assertRaises(ClassificationError):
            self._run(_request())

    def test_oversized_batch_fails_before_calling_provider(self):
        generate = AsyncMock(return_value=_provider_result({"results": []}))
        with self.assertRaises(ClassificationError):
            self._run(_request((1, "x" * MAX_USER_DATA_CHARS), (2, "short")), generate=generate)
        generate.assert_not_called()

    def test_unlisted_provider_falls_back_to_mock(self):
        settings = Settings(ai_feedback_provider="gemini", ai_allowed_providers_raw="mock")
        outcome = self._run(_request((1, "x")), settings=settings)
        self.assertEqual(outcome.provider_result.provider, "mock")


class GeminiProviderTests(unittest.TestCase):
    def _generate(self, handler, **kwargs):
        from app.services.ai.common.providers.gemini import GeminiProvider

        return _with_transport(handler, lambda: GeminiProvider(api_key="test-key").generate("prompt", **kwargs))

    def test_request_shape_and_text_join(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("x-goog-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": '{"results"'}, {"text": ": []}"}]}}],
                    "usageMetadata": {"promptTokenCount": 11, "candidatesTokenCount": 3},
                },
            )

        result = self._generate(handler, system_prompt="sys", model="gemini-2.5-flash", json_mode=True)

        self.assertTrue(seen["url"].endswith("/gemini-2.5-flash:generateContent"))
        self.assertEqual(seen["key"], "test-key")
        self.assertEqual(seen["body"]["generationConfig"]["responseMimeType"], "application/json")
        self.assertEqual(seen["body"]["systemInstruction"]["parts"][0]["text"], "sys")
        self.assertEqual(result.raw_text, '{"results": []}')
        self.assertEqual(result.prompt_tokens, 11)
        self.assertEqual(result.provider, "gemini")

    def test_blocked_prompt_raises_value_error(self):
        def handler(request):
            return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

        with self.assertRaises(ValueError):
            self._generate(handler)

    def test_non_2xx_raises_http_status_error(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"message": "quota"}})

        with self.assertRaises(httpx.HTTPStatusError):
            self._generate(handler)


def _with_transport(handler, coro_factory):
    real_client = httpx.AsyncClient

    def _client(**client_kwargs):
        return real_client(transport=httpx.MockTransport(handler), **client_kwargs)

    with patch("httpx.AsyncClient", _client):
        return asyncio.run(coro_factory())


class VendorProviderTests(unittest.TestCase):
    def test_openai_json_mode_sets_response_format(self):
        from app.services.ai.common.providers.openai import OpenAIProvider

        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": '{"results": []}'}, "finish_reason": "stop"}],
                    "usage": {"prompt_tokens": 9, "completion_tokens": 4},
                },
            )

        result = _with_transport(
            handler,
            lambda: OpenAIProvider(api_key="sk-test").generate("prompt", system_prompt="sys", json_mode=True),
        )

        self.assertEqual(seen["auth"], "Bearer sk-test")
        self.assertEqual(seen["body"]["response_format"], {"type": "json_object"})
        self.assertEqual(seen["body"]["messages"][0], {"role": "system", "content": "sys"})
        self.assertEqual(result.raw_text, '{"results": []}')
        self.assertEqual(result.completion_tokens, 4)

    def test_claude_joins_text_blocks(self):
        from app.services.ai.common.providers.claude import ClaudeProvider

        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "content": [
                        {"type": "text", "text": '{"results":'},
                        {"type": "tool_use", "id": "x"},
                        {"type": "text", "text": " []}"},
                    ],
                    "usage": {"input_tokens": 7, "output_tokens": 2},
                },
            )

        result = _with_transport(
            handler,
            lambda: ClaudeProvider(api_key="key").generate("prompt", system_prompt="sys"),
        )

        self.assertEqual(seen["body"]["system"], "sys")
        self.assertEqual(result.raw_text, '{"results": []}')
        self.assertEqual(result.provider, "claude")

    def test_factory_needs_api_key(self):
        from app.services.ai.common.providers import MockProvider, get_provider
        from app.services.ai.common.providers.openai import OpenAIProvider

        with patch("app.services.ai.common.providers.get_settings") as mock_gs:
            mock_gs.return_value = Settings(ai_allowed_providers_raw="mock,openai", openai_api_key="")
            self.assertIsInstance(get_provider("openai"), MockProvider)
            mock_gs.return_value = Settings(ai_allowed_providers_raw="mock,openai", openai_api_key="sk-test")
            self.assertIsInstance(get_provider("OpenAI"), OpenAIProvider)


if __name__ == "__main__":
    unittest.main()
