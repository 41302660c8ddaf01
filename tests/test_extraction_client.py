from __future__ import annotations

import asyncio
import json

import httpx
import openai
import pytest

from catalog_extraction.services.extraction.client import (
    ExtractionClient,
    build_extraction_prompt,
    classify_error,
    normalize_value,
    parse_response,
    strip_code_fence,
)
from catalog_extraction.services.extraction.errors import (
    ImageQualityRejectedError,
    MalformedResponseError,
    RateLimitedError,
    RemoteServiceError,
    SchemaValidationFailedError,
    TransientNetworkError,
)
from catalog_extraction.services.extraction.schemas import SchemaItem, SchemaRegistry

from conftest import IMAGE_BYTES, RecordingSleep, ScriptedLLM, chat_response, response_payload

_REQUEST = httpx.Request("POST", "https://vision.test/v1/chat/completions")


def _status_error(cls, status: int, message: str):
    return cls(message, response=httpx.Response(status, request=_REQUEST), body=None)


def _client(script, sleep=None) -> tuple[ExtractionClient, ScriptedLLM]:
    llm = ScriptedLLM(script)
    return ExtractionClient(llm, "gpt-4o", sleep=sleep or RecordingSleep()), llm


def test_prompt_lists_every_schema_key() -> None:
    schema = SchemaRegistry().get()
    prompt = build_extraction_prompt(schema)

    for item in schema:
        assert f'"{item.key}"' in prompt
    assert "'ROUND NECK'" in prompt


def test_strip_code_fence() -> None:
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('{"a": 1}') == '{"a": 1}'


def test_normalize_select_value_matches_case_insensitively() -> None:
    item = SchemaItem(key="neck", label="NECK", type="select", allowed_values=("ROUND NECK", "V NECK"))

    assert normalize_value("round neck", item) == ("ROUND NECK", False)
    assert normalize_value("Mandarin", item) == ("Mandarin", True)
    assert normalize_value("  ", item) == (None, False)


def test_normalize_number_value() -> None:
    item = SchemaItem(key="gsm", label="GSM", type="number")

    assert normalize_value("180 gsm", item) == (180, False)
    assert normalize_value(12.5, item) == (12.5, False)
    assert normalize_value("heavy", item) == (None, False)


def test_parse_response_flags_unmatched_select_values_as_discoveries() -> None:
    schema = SchemaRegistry().get()
    payload = response_payload(
        schema,
        neck={"schemaValue": None, "rawValue": "Mandarin band", "visualConfidence": 70, "mappingConfidence": 20},
        pattern=None,
        extra_key={"schemaValue": "x", "rawValue": "x"},
    )

    attributes = parse_response(json.dumps(payload), schema)

    assert list(attributes) == [item.key for item in schema]
    assert attributes["neck"].schema_value == "Mandarin band"
    assert attributes["neck"].is_new_discovery is True
    assert attributes["pattern"] is None
    assert attributes["gsm"].schema_value == 180


def test_parse_response_rejects_invalid_json() -> None:
    with pytest.raises(MalformedResponseError):
        parse_response("I think the shirt is red", SchemaRegistry().get())


def test_parse_response_rejects_missing_keys() -> None:
    schema = SchemaRegistry().get()
    payload = response_payload(schema)
    payload.pop("color")

    with pytest.raises(SchemaValidationFailedError, match="color"):
        parse_response(json.dumps(payload), schema)


def test_parse_response_rejects_wrong_detail_shape() -> None:
    schema = SchemaRegistry().get()
    payload = response_payload(schema, color="RED")

    with pytest.raises(SchemaValidationFailedError):
        parse_response(json.dumps(payload), schema)


def test_classify_error_maps_sdk_exceptions() -> None:
    assert isinstance(classify_error(_status_error(openai.RateLimitError, 429, "slow down")), RateLimitedError)
    assert isinstance(classify_error(_status_error(openai.InternalServerError, 503, "busy")), TransientNetworkError)
    assert isinstance(classify_error(openai.APITimeoutError(request=_REQUEST)), TransientNetworkError)
    assert isinstance(classify_error(openai.APIConnectionError(request=_REQUEST)), TransientNetworkError)
    assert isinstance(
        classify_error(_status_error(openai.BadRequestError, 400, "Invalid image data")),
        ImageQualityRejectedError,
    )
    unauthorized = classify_error(_status_error(openai.AuthenticationError, 401, "bad key"))
    assert isinstance(unauthorized, RemoteServiceError)
    assert unauthorized.status_code == 401


def test_extract_returns_validated_outcome() -> None:
    schema = SchemaRegistry().get()
    client, llm = _client([chat_response(json.dumps(response_payload(schema)), tokens=321)])

    outcome = asyncio.run(client.extract(IMAGE_BYTES, schema, media_type="image/png", label="shirt.png"))

    assert outcome.tokens_used == 321
    assert outcome.model_used == "gpt-4o"
    assert set(outcome.attributes) == {item.key for item in schema}
    call = llm.completions.calls[0]
    assert call["response_format"] == {"type": "json_object"}
    image_part = call["messages"][0]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")


def test_extract_retries_after_rate_limit() -> None:
    schema = SchemaRegistry().get()
    sleep = RecordingSleep()
    client, llm = _client(
        [
            _status_error(openai.RateLimitError, 429, "slow down"),
            chat_response(json.dumps(response_payload(schema)), tokens=77),
        ],
        sleep=sleep,
    )

    outcome = asyncio.run(client.extract(IMAGE_BYTES, schema))

    assert len(llm.completions.calls) == 2
    assert sleep.delays == [2.0]
    assert outcome.tokens_used == 77


def test_extract_gives_up_after_three_transient_failures() -> None:
    schema = SchemaRegistry().get()
    sleep = RecordingSleep()
    client, llm = _client([openai.APIConnectionError(request=_REQUEST) for _ in range(3)], sleep=sleep)

    with pytest.raises(TransientNetworkError):
        asyncio.run(client.extract(IMAGE_BYTES, schema))

    assert len(llm.completions.calls) == 3
    assert sleep.delays == [1.0, 2.0]


def test_extract_rejects_tiny_images_without_calling_the_service() -> None:
    client, llm = _client([])

    with pytest.raises(ImageQualityRejectedError):
        asyncio.run(client.extract(b"tiny", SchemaRegistry().get()))

    assert llm.completions.calls == []


def test_extract_does_not_retry_malformed_responses() -> None:
    sleep = RecordingSleep()
    client, llm = _client([chat_response("not json at all")], sleep=sleep)

    with pytest.raises(MalformedResponseError):
        asyncio.run(client.extract(IMAGE_BYTES, SchemaRegistry().get()))

    assert len(llm.completions.calls) == 1
    assert sleep.delays == []


def test_extract_treats_empty_content_as_malformed() -> None:
    client, _ = _client([chat_response(None)])

    with pytest.raises(MalformedResponseError):
        asyncio.run(client.extract(IMAGE_BYTES, SchemaRegistry().get()))


def test_parse_response_clamps_out_of_range_confidences() -> None:
    schema = SchemaRegistry().get()
    content = json.dumps(response_payload(schema)).replace('"visualConfidence": 90', '"visualConfidence": 1e999', 1)

    attributes = parse_response(content, schema)

    assert attributes[schema[0].key].visual_confidence == 100
