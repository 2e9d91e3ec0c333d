"""Turn a finished transcript into a call Insight.

Summary sources, best first: the intelligence service's own operator summary,
the generative model, a composite of the first and last utterances, and a
keyword summary. The remaining fields come from the generative model when one
is configured and from the keyword heuristic otherwise. All keyword
vocabularies for the heuristic live in this module.
"""
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..config import generative_ai_configured
from ..errors import SynthesisFailure
from ..schemas.pydantic_schemas import ContractFacts, Insight, SpeakerRole, Utterance

logger = logging.getLogger(__name__)

POSITIVE_WORDS = {
    "good", "great", "excellent", "perfect", "love", "happy", "satisfied", "interested",
    "yes", "sure", "definitely", "amazing", "fantastic", "wonderful",
}
NEGATIVE_WORDS = {
    "bad", "terrible", "awful", "hate", "angry", "frustrated", "disappointed",
    "no", "not", "never", "problem", "issue", "concern", "worried",
}

BUSINESS_TOPICS = {
    "price": ("price", "cost", "expensive", "cheap", "budget", "afford", "dollar", "payment"),
    "contract": ("contract", "agreement", "terms", "conditions", "sign", "signature"),
    "timeline": ("timeline", "schedule", "deadline", "urgent", "soon", "quickly"),
    "energy": ("energy", "electricity", "power", "supplier", "provider", "utility", "kwh", "kilowatt"),
    "renewal": ("renewal", "renew", "expire", "expiration", "existing"),
    "meeting": ("meeting", "demo", "presentation", "appointment"),
    "proposal": ("proposal", "quote", "estimate", "offer", "deal", "package"),
}

NEXT_STEP_KEYWORDS = (
    "call", "email", "meeting", "demo", "proposal", "quote", "follow", "schedule",
    "send", "review", "next step", "what happens next",
)
PAIN_KEYWORDS = (
    "problem", "issue", "concern", "worry", "challenge", "difficult",
    "expensive", "slow", "complicated", "confused",
)
BUDGET_KEYWORDS = {"budget", "cost", "price", "expensive", "cheap", "afford", "money", "dollar", "payment", "investment", "invoice"}
TIMELINE_KEYWORDS = {"when", "timeline", "schedule", "deadline", "urgent", "soon", "quickly", "time", "date"}

WEEKDAYS = {"monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"}

RATE_RE = re.compile(r"(?<![\d,.])\$?\s?(\d{1,2}(?:\.\d{1,3})?)\s*(?:/|per)?\s*kwh", re.IGNORECASE)
RATE_TYPE_RE = re.compile(r"\b(fixed|variable|indexed)\b", re.IGNORECASE)
SUPPLIER_RE = re.compile(r"\b(?:with|from|using|on)\s+([A-Z][A-Za-z&\-]{2,40}(?:\s+[A-Z][A-Za-z&\-]+){0,3})")
CONTRACT_END_RE = re.compile(
    r"\b(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|jun(?:e)?|jul(?:y)?|aug(?:ust)?|"
    r"sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)[ ,]*\s*(20\d{2})",
    re.IGNORECASE,
)
USAGE_RE = re.compile(r"(\d{2,3}[,.]\d{3}|\d{4,6})\s*(?:kwh|kw\s*h|kilowatt\s*hours)", re.IGNORECASE)
LENGTH_RE = re.compile(r"\b(\d{1,2})[\s-]*(months?|mo|years?|yrs?)\b", re.IGNORECASE)
NAME_RE = re.compile(r"\b[A-Z][a-z]+ [A-Z][a-z]+\b")

SUMMARY_OPERATOR_NAMES = {"summary", "conversation_summary", "call_summary", "conversation summary"}

_ROLE_LABELS = {
    SpeakerRole.AGENT: "Agent",
    SpeakerRole.CUSTOMER: "Customer",
    SpeakerRole.UNKNOWN: "Speaker",
}


def _pick(obj: Any, keys: Iterable[str], default: Any = "") -> Any:
    if not isinstance(obj, dict):
        return default
    for key in keys:
        value = obj.get(key)
        if value is not None and value != "":
            return value
    return default


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    return [value] if value else []


def _words(text: str) -> List[str]:
    return re.findall(r"[a-z0-9']+", (text or "").lower())


def format_transcript(utterances: Sequence[Utterance]) -> str:
    """One `Agent: ...` / `Customer: ...` line per utterance."""
    return "\n".join(f"{_ROLE_LABELS[u.speaker_role]}: {u.text}" for u in utterances if u.text)


def plain_transcript(utterances: Sequence[Utterance]) -> str:
    return " ".join(u.text.strip() for u in utterances if u.text and u.text.strip())


def guard_supplier(supplier: Any) -> str:
    supplier = str(supplier or "").strip()
    return "" if supplier.lower() in WEEKDAYS else supplier


def extract_contract(text: str) -> ContractFacts:
    """Light regex extraction of energy contract details from free text."""
    facts = ContractFacts()
    text = text or ""

    rate = RATE_RE.search(text)
    if rate:
        value = f"${float(rate.group(1)):.3f}/kWh"
        facts.current_rate = value.replace(".000/kWh", "/kWh")
    rate_type = RATE_TYPE_RE.search(text)
    if rate_type:
        facts.rate_type = rate_type.group(1).lower()
    supplier = SUPPLIER_RE.search(text)
    if supplier:
        facts.supplier = guard_supplier(supplier.group(1))
    end = CONTRACT_END_RE.search(text)
    if end:
        facts.contract_end = f"{end.group(1)} {end.group(2)}"
    usage = USAGE_RE.search(text)
    if usage:
        facts.usage_kwh = usage.group(1).replace(".", ",") + " kWh"
    length = LENGTH_RE.search(text)
    if length:
        n, unit = length.group(1), length.group(2).lower()
        if unit.startswith("y"):
            facts.contract_length = f"{n} year" + ("" if n == "1" else "s")
        else:
            facts.contract_length = f"{n} months"
    return facts


def keyword_summary(word_count: int, sentiment: str, topics: List[str]) -> str:
    topic_text = f"Key topics: {', '.join(topics)}." if topics else "General discussion."
    return f"Call transcript contains {word_count} words. {sentiment} sentiment detected. {topic_text}"


def composite_summary(utterances: Sequence[Utterance]) -> str:
    spoken = [u for u in utterances if u.text and u.text.strip()]
    if not spoken:
        return ""
    first, last = spoken[0], spoken[-1]
    opening = f"{_ROLE_LABELS[first.speaker_role]} opened: \"{first.text.strip()[:160]}\""
    if len(spoken) == 1:
        return opening
    return f"{opening} {_ROLE_LABELS[last.speaker_role]} closed: \"{last.text.strip()[:160]}\""


def heuristic_insight(text: str) -> Insight:
    words = _words(text)
    word_set = set(words)
    lower = (text or "").lower()

    positive = sum(1 for w in words if w in POSITIVE_WORDS)
    negative = sum(1 for w in words if w in NEGATIVE_WORDS)
    sentiment, score = "Neutral", 0.0
    if positive > negative:
        sentiment, score = "Positive", (positive - negative) / len(words)
    elif negative > positive:
        sentiment, score = "Negative", -(negative - positive) / len(words)

    topics = [topic for topic, keywords in BUSINESS_TOPICS.items() if word_set.intersection(keywords)]
    next_steps = [k for k in NEXT_STEP_KEYWORDS if (k in lower if " " in k else k in word_set)]
    pain_points = [k for k in PAIN_KEYWORDS if k in word_set]
    decision_makers: List[str] = []
    for name in NAME_RE.findall(text or ""):
        if name not in decision_makers:
            decision_makers.append(name)

    return Insight(
        summary=keyword_summary(len(words), sentiment, topics),
        sentiment=sentiment,
        sentiment_score=round(score, 4),
        key_topics=topics or ["General business discussion"],
        next_steps=next_steps or ["Follow up call"],
        pain_points=pain_points,
        budget="Discussed" if word_set & BUDGET_KEYWORDS else "Not Mentioned",
        timeline="Timeline discussed" if word_set & TIMELINE_KEYWORDS else "Not specified",
        decision_makers=decision_makers[:3],
        contract=extract_contract(text),
        source="heuristic",
    )


def _text_from_result(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("result") or value.get("text") or value.get("summary") or ""
    return str(value).strip() if value else ""


def operator_summary(operator_results: Optional[Sequence[Dict[str, Any]]]) -> str:
    """The intelligence service's own summary, if any operator produced one."""
    for op in operator_results or []:
        if not isinstance(op, dict):
            continue
        op_type = _pick(op, ("operator_type", "operatorType"))
        name = str(_pick(op, ("name",))).lower()
        if op_type == "text_generation" or name in SUMMARY_OPERATOR_NAMES:
            result = op.get("result")
            candidate = (
                _text_from_result(_pick(op, ("text_generation_results", "textGenerationResults"), None))
                or _text_from_result(op.get("summary"))
                or _text_from_result(_pick(result, ("summary",), None))
                or (result.strip() if isinstance(result, str) else "")
            )
            if candidate:
                return candidate
        if op_type == "extraction":
            extracted = _pick(op, ("extract_results", "extractionResults", "extraction_results"), None)
            if isinstance(extracted, str):
                try:
                    extracted = json.loads(extracted)
                except ValueError:
                    logger.debug(f"Could not parse extraction results of operator {name}")
                    extracted = None
            summary = _text_from_result(_pick(extracted, ("summary",), None))
            if summary:
                return summary
    return ""


def _contract_from(raw: Any) -> ContractFacts:
    raw = raw if isinstance(raw, dict) else {}
    return ContractFacts(
        current_rate=str(_pick(raw, ("current_rate", "currentRate", "rate"))),
        rate_type=str(_pick(raw, ("rate_type", "rateType"))),
        supplier=guard_supplier(_pick(raw, ("supplier",))),
        contract_end=str(_pick(raw, ("contract_end", "contractEnd"))),
        usage_kwh=str(_pick(raw, ("usage_kwh", "usageKWh", "usage_k_wh", "usageK_wh", "usage"))),
        contract_length=str(_pick(raw, ("contract_length", "contractLength"))),
    )


def _merge_generative(base: Insight, generated: Dict[str, Any]) -> Insight:
    contract = _contract_from(generated.get("contract"))
    heuristic_contract = base.contract.model_dump()
    # Keep regex facts the model left blank
    merged_contract = {k: v or heuristic_contract.get(k, "") for k, v in contract.model_dump().items()}
    return base.model_copy(update={
        "summary": str(_pick(generated, ("summary",), base.summary)),
        "sentiment": str(_pick(generated, ("sentiment",), base.sentiment)),
        "key_topics": _as_list(_pick(generated, ("key_topics", "keyTopics"), base.key_topics)),
        "next_steps": _as_list(_pick(generated, ("next_steps", "nextSteps"), base.next_steps)),
        "pain_points": _as_list(_pick(generated, ("pain_points", "painPoints"), base.pain_points)),
        "budget": _pick(generated, ("budget",), base.budget),
        "timeline": _pick(generated, ("timeline",), base.timeline),
        "decision_makers": _as_list(_pick(generated, ("decision_makers", "decisionMakers"), base.decision_makers)),
        "contract": ContractFacts(**merged_contract),
        "source": "generative",
    })


async def synthesize(
    utterances: Sequence[Utterance],
    operator_results: Optional[Sequence[Dict[str, Any]]] = None,
    client=None,
) -> Insight:
    text = plain_transcript(utterances)
    insight = heuristic_insight(text)
    used_generative = False

    if client is not None or generative_ai_configured():
        if client is None:
            from .openai_client import OpenAIClient
            client = OpenAIClient()
        try:
            generated = await client.summarize_call(format_transcript(utterances))
            insight = _merge_generative(insight, generated)
            used_generative = True
        except SynthesisFailure as e:
            logger.warning(f"Generative insight unavailable, using keyword heuristic: {e}")

    provider_summary = operator_summary(operator_results)
    if provider_summary:
        insight.summary = provider_summary
    elif not used_generative or not insight.summary:
        insight.summary = composite_summary(utterances) or insight.summary
    return insight


def insight_from_operator_payload(payload: Dict[str, Any]) -> Insight:
    """Normalize an operator-result callback body into an Insight."""
    payload = payload or {}
    nested = payload.get("Payload") if isinstance(payload.get("Payload"), dict) else {}
    op = nested.get("Result") or payload.get("result") or payload
    if not isinstance(op, dict):
        op = {}
    flags_in = op.get("flags") if isinstance(op.get("flags"), dict) else {}

    def flag(*keys: str) -> bool:
        return bool(_pick(flags_in, keys, False))

    return Insight(
        summary=str(_pick(op, ("summary", "conversation_summary", "Conversation Summary"))),
        sentiment=str(_pick(op, ("sentiment",), "Unknown")),
        key_topics=_as_list(_pick(op, ("key_topics", "keyTopics"), [])),
        next_steps=_as_list(_pick(op, ("next_steps", "nextSteps"), [])),
        pain_points=_as_list(_pick(op, ("pain_points", "painPoints"), [])),
        budget=_pick(op, ("budget",), None),
        timeline=_pick(op, ("timeline",), None),
        contract=_contract_from(op.get("contract")),
        disposition=_pick(op, ("disposition",), None),
        flags={
            "recording_disclosure": flag("recording_disclosure", "recordingDisclosure"),
            "escalation_request": flag("escalation_request", "escalationRequest"),
            "do_not_contact": flag("do_not_contact", "doNotContact"),
            "non_english": flag("non_english", "nonEnglish"),
            "voicemail_detected": flag("voicemail_detected", "voicemailDetected"),
            "call_transfer": flag("call_transfer", "callTransfer"),
        },
        entities=_as_list(op.get("entities")),
        source="operator",
    )
