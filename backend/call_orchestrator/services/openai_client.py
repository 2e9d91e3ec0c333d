import os
import json
import logging
from typing import Dict, Any
from tenacity import retry, wait_exponential, stop_after_attempt, RetryError
from openai import AsyncOpenAI
from dotenv import load_dotenv

from ..errors import SynthesisFailure

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


CALL_INSIGHT_SYSTEM_PROMPT = (
    "You are a post-call analyst for an energy brokerage sales team. Given the full transcript of a sales call, "
    "with each line prefixed by Agent or Customer, produce one JSON object with keys below exactly as shown.\n\n"
    "PRODUCE:\n{\n  \"summary\": \"<2-3 sentence summary>\",\n  \"sentiment\": \"Positive\" | \"Neutral\" | \"Negative\",\n"
    "  \"key_topics\": [\"<topic>\"],\n  \"next_steps\": [\"<step>\"],\n  \"pain_points\": [\"<pain point>\"],\n"
    "  \"budget\": \"Discussed\" | \"Not Mentioned\" | \"Unclear\",\n  \"timeline\": \"<string|null>\",\n"
    "  \"decision_makers\": [\"<name>\"],\n  \"contract\": {\n    \"current_rate\": \"<string>\",\n    \"rate_type\": \"<fixed|variable|indexed|empty>\",\n"
    "    \"supplier\": \"<string>\",\n    \"contract_end\": \"<string>\",\n    \"usage_kwh\": \"<string>\",\n    \"contract_length\": \"<string>\"\n  }\n}\n\n"
    "Use only evidence from the transcript. Leave unknown strings empty and unknown lists empty. "
    "Keep the JSON minimal and machine-readable: no explanations outside the JSON."
)


class OpenAIClient:
    def __init__(self) -> None:
        # Try Groq first (free), fallback to OpenAI
        groq_key = os.getenv("GROQ_API_KEY")
        openai_key = os.getenv("OPENAI_API_KEY")

        if groq_key and len(groq_key.strip()) > 0:
            self.client = AsyncOpenAI(
                api_key=groq_key,
                base_url="https://api.groq.com/openai/v1"
            )
            self.model = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")
            self.simulated = False
            logger.info("OpenAIClient: using Groq LLM")
        elif openai_key and len(openai_key.strip()) > 0:
            self.client = AsyncOpenAI(api_key=openai_key)
            self.model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
            self.simulated = False
            logger.info("OpenAIClient: using OpenAI")
        else:
            # No API keys; callers fall back to the keyword heuristic
            self.client = None
            self.model = None
            self.simulated = True
            logger.info("OpenAIClient: no API key configured, generative insights disabled")

    @retry(wait=wait_exponential(min=1, max=10), stop=stop_after_attempt(3))
    async def _complete(self, transcript_text: str) -> Dict[str, Any]:
        chat = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": CALL_INSIGHT_SYSTEM_PROMPT}, {"role": "user", "content": transcript_text}],
            response_format={"type": "json_object"},
            temperature=0.2,
            max_tokens=800,
        )
        content = chat.choices[0].message.content
        if isinstance(content, str):
            content = json.loads(content)
        if not isinstance(content, dict):
            raise ValueError(f"Expected a JSON object, got {type(content).__name__}")
        return content

    async def summarize_call(self, transcript_text: str) -> Dict[str, Any]:
        """Generative call insight as a plain dict; raises SynthesisFailure when unusable."""
        if self.simulated:
            raise SynthesisFailure("No generative API key configured")
        if not (transcript_text or "").strip():
            raise SynthesisFailure("Empty transcript")
        try:
            return await self._complete(transcript_text)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(f"Generative summary failed after retries: {type(cause).__name__}: {cause}")
            raise SynthesisFailure(str(cause)) from cause
