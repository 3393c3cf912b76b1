import pytest

from hand_worker.errors import ResponseSchemaError
from hand_worker.pipeline.response import (
    AIAnalysis, HandItem, Phase1Response, extract_json_object, parse_response,
)


def test_plain_json():
    assert extract_json_object('{"hands": []}') == {"hands": []}


def test_strips_markdown_fences():
    text = '```json\n{"hands": [{"handNumber": 1, "start": "00:10", "end": "01:00"}]}\n```'
    assert extract_json_object(text)["hands"][0]["handNumber"] == 1


def test_recovers_object_from_surrounding_text():
    text = 'Here are the hands:\n{"hands": []}\nLet me know if you need more.'
    assert extract_json_object(text) == {"hands": []}


@pytest.mark.parametrize("text", ["", "   ", None, "no json here", "{broken", "[1, 2, 3]"])
def test_unrecoverable_responses(text):
    with pytest.raises(ResponseSchemaError):
        extract_json_object(text)


def test_parse_response_validates_shape():
    parsed = parse_response('{"hands": [{"handNumber": 3, "start": "01:00", "end": "02:00"}]}', Phase1Response)
    assert parsed.hands[0].hand_number == 3

    with pytest.raises(ResponseSchemaError):
        parse_response('{"boundaries": []}', Phase1Response)
    with pytest.raises(ResponseSchemaError):
        parse_response('{"hands": [{"handNumber": "first"}]}', Phase1Response)


def test_hand_item_defaults():
    item = HandItem.model_validate({"handNumber": 1})

    assert item.pot == 0.0
    assert item.players == []
    assert item.ai_analysis.reasoning == "No analysis data"
    assert item.ai_analysis.hand_quality == "routine"


def test_confidence_is_bounded():
    with pytest.raises(ValueError):
        AIAnalysis.model_validate({"confidence": 1.5})
