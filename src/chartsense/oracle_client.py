"""
Oracle Client
=============

Async client for the vision oracle (Gemini generateContent REST API)
using aiohttp.

The oracle receives the feature snapshot, the JPEG frame, the active
personality, the mode and its threshold tuple, and answers with a JSON
object:

    {
        "decision": "CONFIRM" | "REJECT",
        "direction": "BUY" | "SELL" | "WAIT",
        "score": 0-100,
        "speech": "BUY! Short technical explanation"
    }

analyze() never raises. Missing configuration, transport errors,
timeouts and malformed payloads all degrade to a REJECT/WAIT result.

Usage:
    async with OracleClient(api_key) as oracle:
        result = await oracle.analyze(request)
"""

import logging
from typing import Any, Optional

import aiohttp
import orjson

from chartsense.personality import ARCHETYPES
from chartsense.types import (
    Direction,
    OracleDecision,
    OracleError,
    OracleRequest,
    OracleResult,
)
from chartsense.utils_time import now_ms

logger = logging.getLogger(__name__)

# Gemini API settings
ORACLE_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
ORACLE_MODEL = "gemini-2.5-flash"
ORACLE_TIMEOUT = 30  # seconds
ORACLE_TEMPERATURE = 0.1

CONFIG_PENDING_REASONING = "WAIT! Oracle configuration pending."
UNSTABLE_FLOW_REASONING = "WAIT! Unstable flow."

_DECISIONS = {"CONFIRM": OracleDecision.CONFIRM, "REJECT": OracleDecision.REJECT}
_DIRECTIONS = {"BUY": Direction.BUY, "SELL": Direction.SELL, "WAIT": Direction.WAIT}


def build_prompt(request: OracleRequest) -> str:
    """Render the instruction text sent next to the frame."""
    f = request.features
    mode = request.mode.value.upper()
    thresholds = request.thresholds
    return (
        f"{ARCHETYPES[request.personality]}\n"
        f"MODE: {mode}\n"
        f"THRESHOLDS: min_probability={thresholds.get('min_probability', 0):.0f} "
        f"max_risk={thresholds.get('max_risk', 0):.0f} "
        f"min_integrity={thresholds.get('min_integrity', 0):.0f}\n"
        "\n"
        "METRICS:\n"
        f"- Slope: {f.slope:.5f} | RSI: {f.rsi:.2f} | Trend: {f.trend.value}\n"
        f"- Vol: {f.volatility:.1f}% | Pressure: B:{f.buy_pressure:.0f}%/S:{f.sell_pressure:.0f}%\n"
        f"- Integrity: {f.flow_integrity:.0f} | Manipulation risk: {f.manipulation_risk:.0f}\n"
        f"- Force candle: {f.command_candle_detected} | Figure: {f.chart_figure.value} "
        f"| Candle: {f.candle_morphology.value}\n"
        f"- Support: {[round(z, 1) for z in f.support_zones]} "
        f"| Resistance: {[round(z, 1) for z in f.resistance_zones]} (percent of chart height, 0 = top)\n"
        "\n"
        f"TASK: Decide CONFIRM or REJECT for mode {mode}.\n"
        "\n"
        "MANDATORY SPEECH RULE:\n"
        'The "speech" field MUST start with exactly one of "BUY!", "SELL!" or "WAIT!", '
        "followed by a short technical explanation.\n"
        'Example: "BUY! Sir, selling exhaustion detected at support."\n'
        "\n"
        "JSON ANSWER:\n"
        "{\n"
        '  "decision": "CONFIRM" or "REJECT",\n'
        '  "direction": "BUY", "SELL" or "WAIT",\n'
        '  "score": 0-100,\n'
        '  "speech": "[ACTION]! [Short explanation]"\n'
        "}"
    )


def parse_oracle_payload(payload: Any) -> OracleResult:
    """
    Normalize the oracle JSON answer.

    Unknown or missing fields fall back to safe defaults. A confirmation
    without a BUY/SELL direction becomes a rejection.
    """
    if not isinstance(payload, dict):
        return OracleResult.fallback(UNSTABLE_FLOW_REASONING)

    decision = _DECISIONS.get(str(payload.get("decision", "")).strip().upper(), OracleDecision.REJECT)
    direction = _DIRECTIONS.get(str(payload.get("direction", "")).strip().upper(), Direction.WAIT)

    reasoning = payload.get("speech")
    if not isinstance(reasoning, str) or not reasoning.strip():
        reasoning = UNSTABLE_FLOW_REASONING

    try:
        score = float(payload.get("score") or 0.0)
    except (TypeError, ValueError):
        score = 0.0
    if score != score:  # NaN
        score = 0.0
    score = max(0.0, min(100.0, score))

    confirmed = decision is OracleDecision.CONFIRM and direction is not Direction.WAIT
    return OracleResult(
        decision=OracleDecision.CONFIRM if confirmed else OracleDecision.REJECT,
        direction=direction if confirmed else Direction.WAIT,
        reasoning=reasoning.strip(),
        score=score,
    )


def extract_candidate_text(body: dict) -> str:
    """
    Pull the text part out of a generateContent response.

    Raises:
        OracleError: If the response carries no text part.
    """
    try:
        parts = body["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError) as e:
        raise OracleError(f"response without candidates: {e}")
    for part in parts:
        if isinstance(part, dict) and isinstance(part.get("text"), str):
            return part["text"]
    raise OracleError("response without text part")


class OracleClient:
    """
    Async client for the vision oracle.

    Args:
        api_key: Gemini API key (empty: every call returns the
            configuration-pending fallback without network traffic)
        model: Model name
        base_url: REST base URL
        timeout: Request timeout in seconds
        temperature: Sampling temperature
    """

    def __init__(
        self,
        api_key: str,
        model: str = ORACLE_MODEL,
        base_url: str = ORACLE_BASE_URL,
        timeout: float = ORACLE_TIMEOUT,
        temperature: float = ORACLE_TEMPERATURE,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._temperature = temperature
        self._session: Optional[aiohttp.ClientSession] = None

        self._requests = 0
        self._failures = 0

        logger.info(
            "oracle_client_initialized",
            extra={"model": model, "enabled": bool(api_key)},
        )

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure aiohttp session exists."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Content-Type": "application/json"},
            )
        return self._session

    async def close(self) -> None:
        """Close the client session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
            logger.info("oracle_client_closed")

    async def __aenter__(self) -> "OracleClient":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _build_body(self, request: OracleRequest) -> dict:
        return {
            "contents": [{
                "parts": [
                    {"text": build_prompt(request)},
                    {"inline_data": {"mime_type": "image/jpeg", "data": request.frame_b64}},
                ],
            }],
            "generationConfig": {
                "temperature": self._temperature,
                "responseMimeType": "application/json",
            },
        }

    async def _generate(self, request: OracleRequest) -> dict:
        """
        One generateContent round trip.

        Raises:
            OracleError: On HTTP errors or undecodable payloads.
            aiohttp.ClientError / asyncio.TimeoutError: On transport failures.
        """
        session = await self._ensure_session()
        url = f"{self._base_url}/models/{self._model}:generateContent"
        start_ms = now_ms()

        async with session.post(
            url,
            params={"key": self._api_key},
            data=orjson.dumps(self._build_body(request)),
        ) as response:
            logger.info(
                "oracle_request",
                extra={
                    "model": self._model,
                    "mode": request.mode.value,
                    "personality": request.personality.value,
                    "status": response.status,
                    "elapsed_ms": now_ms() - start_ms,
                },
            )
            if response.status != 200:
                text = await response.text()
                raise OracleError(f"oracle error {response.status}: {text[:200]}")
            body = await response.json(content_type=None)

        text = extract_candidate_text(body)
        try:
            return orjson.loads(text)
        except orjson.JSONDecodeError as e:
            raise OracleError(f"malformed oracle JSON: {e}")

    async def analyze(self, request: OracleRequest) -> OracleResult:
        """
        Ask the oracle to confirm or reject a trade direction.

        Returns:
            Normalized OracleResult. Never raises.
        """
        if not self._api_key:
            return OracleResult.fallback(CONFIG_PENDING_REASONING)

        self._requests += 1
        try:
            payload = await self._generate(request)
        except Exception as e:
            self._failures += 1
            logger.warning(
                "oracle_request_failed",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            return OracleResult.fallback()

        result = parse_oracle_payload(payload)
        logger.info("oracle_result", extra=result.to_dict())
        return result

    def get_stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "model": self._model,
            "requests": self._requests,
            "failures": self._failures,
        }
