"""Unit tests for the campaign advisor."""

import json

import httpx
import pytest

from src.models import AdvisorRequest
from src.promo.advisor import FALLBACK_REPLY, CampaignAdvisor, parse_completion


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def advisor_with(handler) -> CampaignAdvisor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CampaignAdvisor(api_key="sk-test", model="gpt-4o-mini", base_url="https://llm.test/v1", client=client)


@pytest.mark.unit
class TestParseCompletion:
    def test_json_reply(self):
        content = json.dumps({"assistant_text": "Try 20% off", "proposal": {"discount_bps": 2000}})
        assert parse_completion(content) == {"reply": "Try 20% off", "proposal": {"discount_bps": 2000}}

    def test_plain_text_passed_through(self):
        assert parse_completion("Just text") == {"reply": "Just text", "proposal": None}

    def test_non_object_proposal_dropped(self):
        assert parse_completion(json.dumps({"assistant_text": "x", "proposal": [1]}))["proposal"] is None


@pytest.mark.unit
class TestCampaignAdvisor:
    @pytest.mark.asyncio
    async def test_sends_prompt_and_context(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion(json.dumps({"assistant_text": "ok", "proposal": {"name": "BF"}})))

        advisor = advisor_with(handler)
        result = await advisor.advise(
            AdvisorRequest(message="Black Friday push", metrics={"sales": 10}, merchantProfile={"name": "Cafe"})
        )

        assert result == {"reply": "ok", "proposal": {"name": "BF"}}
        assert seen["url"] == "https://llm.test/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["temperature"] == 0.4
        assert seen["body"]["messages"][0]["role"] == "system"
        user = json.loads(seen["body"]["messages"][1]["content"])
        assert user["user_message"] == "Black Friday push"
        assert user["merchant_profile"] == {"name": "Cafe"}

    @pytest.mark.asyncio
    async def test_upstream_error_degrades(self):
        advisor = advisor_with(lambda request: httpx.Response(500, text="overloaded"))
        result = await advisor.advise(AdvisorRequest(message="hi"))
        assert result == {"reply": FALLBACK_REPLY, "proposal": None}

    @pytest.mark.asyncio
    async def test_malformed_response_degrades(self):
        advisor = advisor_with(lambda request: httpx.Response(200, json={"choices": []}))
        result = await advisor.advise(AdvisorRequest(message="hi"))
        assert result == {"reply": FALLBACK_REPLY, "proposal": None}

    @pytest.mark.asyncio
    async def test_no_api_key(self):
        advisor = CampaignAdvisor(api_key="")
        result = await advisor.advise(AdvisorRequest(message="hi"))
        assert result["proposal"] is None
        assert result["reply"] == FALLBACK_REPLY
