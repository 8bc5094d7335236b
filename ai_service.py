"""
Thin client for the Gemini generateContent REST endpoint.

get_chatbot_response() always returns text the bot can show to the user.
get_json_response() returns parsed JSON or raises AIServiceError.
"""
import json

import requests
import structlog

from config import GEMINI_API_KEY, GEMINI_MODEL

logger = structlog.get_logger()

API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
TIMEOUT = 30

OVERLOADED_REPLY = "My AI brain is a bit overloaded at the moment. Please try asking again in a few seconds."
UNAVAILABLE_REPLY = "I'm sorry, I'm having trouble connecting to my brain right now. Please try again later."
BLOCKED_REPLY = "I'm sorry, I can't respond to that specific query. Please try rephrasing."
OVERLOADED_ERROR = "The AI service is temporarily overloaded. Please try again in a moment."
STRUCTURED_ERROR = "Failed to get a structured response from AI."

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]


class AIServiceError(Exception):
    pass


class AIOverloadedError(AIServiceError):
    pass


def _generate(prompt: str, generation_config=None) -> dict:
    if not GEMINI_API_KEY:
        raise AIServiceError("GEMINI_API_KEY is not configured")
    body = {"contents": [{"parts": [{"text": prompt}]}], "safetySettings": SAFETY_SETTINGS}
    if generation_config:
        body["generationConfig"] = generation_config
    resp = requests.post(
        API_URL.format(model=GEMINI_MODEL),
        params={"key": GEMINI_API_KEY},
        json=body,
        timeout=TIMEOUT,
    )
    if resp.status_code == 503:
        raise AIOverloadedError(f"Gemini returned 503: {resp.text[:200]}")
    resp.raise_for_status()
    return resp.json()


def _text_of(data: dict) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts)


def get_chatbot_response(prompt: str) -> str:
    try:
        data = _generate(prompt)
    except AIOverloadedError as e:
        logger.error(f"Gemini overloaded: {e}")
        return OVERLOADED_REPLY
    except (AIServiceError, requests.RequestException, ValueError) as e:
        logger.error(f"Error communicating with Gemini API: {e}")
        return UNAVAILABLE_REPLY

    block_reason = (data.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        logger.error(f"Gemini response was blocked: {block_reason}")
        return BLOCKED_REPLY
    return _text_of(data)


def get_json_response(prompt: str) -> dict:
    try:
        data = _generate(prompt, {"responseMimeType": "application/json"})
        return json.loads(_text_of(data))
    except AIOverloadedError as e:
        logger.error(f"Gemini overloaded: {e}")
        raise AIServiceError(OVERLOADED_ERROR)
    except (AIServiceError, requests.RequestException, ValueError) as e:
        logger.error(f"Error getting JSON response from Gemini API: {e}")
        raise AIServiceError(STRUCTURED_ERROR)
