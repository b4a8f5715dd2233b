"""AI campaign advisor backed by an OpenAI-compatible chat completions API."""

import json
from typing import Any, Optional

import httpx

from src.config import config
from src.logging_utils import get_logger
from src.models import AdvisorRequest

logger = get_logger(__name__)

FALLBACK_REPLY = "Could not generate a suggestion right now. Please try again in a few seconds."

SYSTEM_PROMPT = (
    "You are an AI campaign strategist for a Web3 discount-coupon protocol on Solana. "
    "You help merchants design on-chain discount campaigns using coupons that can be minted, traded and redeemed. "
    "Every campaign MUST include a 10% protocol fee, so set service_fee_bps to exactly 1000 in the proposal. "
    "You ALWAYS answer in English and you must return ONLY a valid JSON object with the following structure:\n\n"
    "{\n"
    '  "assistant_text": string,\n'
    '  "proposal": {\n'
    '    "name": string,\n'
    '    "audience": string | null,\n'
    '    "period_label": string | null,\n'
    '    "discount_bps": number,\n'
    '    "service_fee_bps": number,\n'
    '    "resale_bps": number,\n'
    '    "expiration_timestamp": number,\n'
    '    "total_coupons": number,\n'
    '    "mint_cost_lamports": number,\n'
    '    "max_discount_lamports": number,\n'
    '    "deposit_amount_lamports": number,\n'
    '    "category_code": number,\n'
    '    "product_code": number,\n'
    '    "requires_wallet": boolean,\n'
    '    "target_wallet": string | null,\n'
    '    "minted_coupons": number,\n'
    '    "used_coupons": number\n'
    "  }\n"
    "}\n\n"
    "The JSON must not contain any comments or trailing commas. "
    "Infer missing technical parameters from the merchant goal, risk tolerance and metrics. "
    "If the user mentions Black Friday or a specific date, set a matching expiration_timestamp and period_label."
)


def parse_completion(content: str) -> dict:
    """Split model output into ``reply`` and ``proposal``.

    Output that is not a JSON object is passed through as the reply.
    """
    try:
        parsed = json.loads(content)
    except ValueError:
        return {"reply": content, "proposal": None}
    if not isinstance(parsed, dict):
        return {"reply": content, "proposal": None}

    proposal = parsed.get("proposal")
    return {
        "reply": parsed.get("assistant_text") or content,
        "proposal": proposal if isinstance(proposal, dict) else None,
    }


class CampaignAdvisor:
    """Turns a merchant's goal into a campaign proposal."""

    def __init__(
        self,
        api_key: str = config.openai_api_key,
        model: str = config.openai_model,
        base_url: str = config.openai_base_url,
        timeout: float = config.advisor_timeout_seconds,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client

    def _messages(self, request: AdvisorRequest) -> list[dict[str, Any]]:
        user_content = {
            "user_message": request.message,
            "metrics": request.metrics,
            "merchant_profile": request.merchant_profile,
            "existing_campaigns": request.campaigns,
            "shopper_context": request.shopper_context,
        }
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(user_content)},
        ]

    async def _complete(self, client: httpx.AsyncClient, request: AdvisorRequest) -> str:
        response = await client.post(
            f"{self.base_url}/chat/completions",
            json={"model": self.model, "messages": self._messages(request), "temperature": 0.4},
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()["choices"][0]["message"]["content"] or ""

    async def advise(self, request: AdvisorRequest) -> dict:
        """Ask the model for a proposal.

        Returns:
            ``{"reply": str, "proposal": dict | None}``. Never raises: any
            upstream failure degrades to an apology with no proposal.
        """
        logger.info(
            f"Advisor request: metrics={request.metrics is not None}, "
            f"profile={request.merchant_profile is not None}, campaigns={len(request.campaigns or [])}"
        )
        if not self.api_key:
            logger.warning("OPENAI_API_KEY not set; returning fallback advisor reply")
            return {"reply": FALLBACK_REPLY, "proposal": None}

        try:
            if self.client is not None:
                content = await self._complete(self.client, request)
            else:
                async with httpx.AsyncClient() as client:
                    content = await self._complete(client, request)
        except httpx.HTTPStatusError as e:
            logger.error(f"Advisor API error {e.response.status_code}: {e.response.text}")
            return {"reply": FALLBACK_REPLY, "proposal": None}
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.error(f"Advisor call failed: {e}", exc_info=True)
            return {"reply": FALLBACK_REPLY, "proposal": None}

        if not content:
            return {"reply": FALLBACK_REPLY, "proposal": None}
        return parse_completion(content)


# Global advisor instance
campaign_advisor = CampaignAdvisor()
