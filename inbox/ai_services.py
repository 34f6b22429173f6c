import json
import logging
from dataclasses import dataclass
from typing import List, Optional

import requests
from bs4 import BeautifulSoup
from django.conf import settings

from .exceptions import ActionPlanError

logger = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 4000
MAX_PAGE_LENGTH = 50000
ACTION_TYPES = ("click", "input", "select")

CLASSIFIER_SYSTEM_PROMPT = (
    "You are an email classifier that helps organize emails into categories. "
    "Respond only with valid JSON."
)

UNSUBSCRIBE_SYSTEM_PROMPT = (
    "You are an AI assistant helping to unsubscribe from emails.\n"
    "Analyze the HTML content and describe the steps needed to unsubscribe.\n"
    "Return JSON in this format:\n"
    "{\n"
    '  "actions": [\n'
    '    { "type": "click", "selector": "CSS selector" },\n'
    '    { "type": "input", "selector": "CSS selector", "value": "text to input" },\n'
    '    { "type": "select", "selector": "CSS selector", "value": "option value" }\n'
    "  ]\n"
    "}"
)


class ChatModel:
    """
    Chat-completion client for an OpenAI-compatible HTTP endpoint.
    """

    def __init__(self, api_key, base_url, model, timeout=60):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def complete(self, system, user, temperature=0.3):
        response = requests.post(
            f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                "temperature": temperature,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        return data["choices"][0]["message"].get("content") or ""


def get_default_model():
    return ChatModel(
        api_key=settings.LLM_API_KEY,
        base_url=settings.LLM_BASE_URL,
        model=settings.LLM_MODEL,
        timeout=settings.LLM_TIMEOUT,
    )


def strip_code_fences(content):
    return content.replace("```json", "").replace("```", "").strip()


@dataclass
class ClassificationResult:
    category_id: Optional[int] = None
    confidence: float = 0.0
    summary: str = ""


def build_classification_prompt(categories, message):
    categories_context = "\n".join(
        f'Category "{c.name}": {c.description}' for c in categories
    )
    content = (message.text_body or message.html_body or "")[:MAX_INPUT_LENGTH]
    return (
        f"Given these email categories:\n{categories_context}\n\n"
        f"Analyze this email:\n"
        f"Subject: {message.subject}\n"
        f"Snippet: {message.snippet}\n"
        f"Content: {content}\n\n"
        "Tasks:\n"
        "1. Determine the most appropriate category for this email\n"
        "2. Provide a brief summary of the email content\n"
        "3. Rate your confidence in the categorization from 0 to 1\n\n"
        "Format your response as JSON with these fields:\n"
        "- category: The name of the best matching category\n"
        "- confidence: Your confidence score (0-1)\n"
        "- summary: A brief summary of the email\n\n"
        "Response:"
    )


def _coerce_confidence(value):
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return min(max(confidence, 0.0), 1.0)


def classify_email(message, categories, model):
    """
    Asks the model to pick one of ``categories`` for ``message``.

    Never raises: any model or parsing failure yields an empty
    ClassificationResult so the message is stored uncategorized.

    Args:
        message: ParsedMessage to classify.
        categories: EmailCategory instances the answer must name exactly.
        model: object with ``complete(system, user, temperature)``.

    Returns:
        ClassificationResult
    """
    try:
        content = model.complete(
            CLASSIFIER_SYSTEM_PROMPT,
            build_classification_prompt(categories, message),
            temperature=0.3,
        )
        response = json.loads(strip_code_fences(content))
        if not isinstance(response, dict):
            raise ValueError("classifier response is not a JSON object")
    except Exception as error:
        logger.warning("[AI] Email classification error for %s: %s", message.id, error)
        return ClassificationResult()

    name = response.get("category")
    matched = next((c for c in categories if c.name == name), None)
    summary = response.get("summary") or ""
    return ClassificationResult(
        category_id=matched.id if matched else None,
        confidence=_coerce_confidence(response.get("confidence")),
        summary=summary if isinstance(summary, str) else str(summary),
    )


@dataclass
class PageAction:
    type: str
    selector: str
    value: str = ""


def compact_markup(html, limit=MAX_PAGE_LENGTH):
    """Drops scripts, styles and inline SVG so the page fits in a prompt."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(["script", "style", "noscript", "svg"]):
        tag.decompose()
    return str(soup)[:limit]


def parse_action_plan(content) -> List[PageAction]:
    try:
        plan = json.loads(strip_code_fences(content))
    except json.JSONDecodeError as e:
        raise ActionPlanError(f"Action plan is not JSON: {e}") from e

    actions = plan.get("actions") if isinstance(plan, dict) else None
    if not isinstance(actions, list):
        raise ActionPlanError("Action plan has no 'actions' list")

    parsed = []
    for index, action in enumerate(actions):
        if not isinstance(action, dict):
            raise ActionPlanError("Action is not an object", {"index": index})
        action_type = action.get("type")
        selector = action.get("selector")
        if action_type not in ACTION_TYPES:
            raise ActionPlanError(f"Unknown action type {action_type!r}", {"index": index})
        if not isinstance(selector, str) or not selector:
            raise ActionPlanError("Action has no selector", {"index": index})
        value = action.get("value")
        parsed.append(PageAction(type=action_type, selector=selector, value="" if value is None else str(value)))
    return parsed


def plan_unsubscribe_actions(page_html, model):
    """
    Asks the model which UI steps unsubscribe on the given page.

    Raises:
        ActionPlanError: when the answer is not a valid action plan.
    """
    content = model.complete(
        UNSUBSCRIBE_SYSTEM_PROMPT,
        "Here's the unsubscribe page HTML. What steps should I take to unsubscribe?\n"
        f"{compact_markup(page_html)}",
        temperature=0.3,
    )
    return parse_action_plan(content)
