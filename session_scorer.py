"""Post-session analysis: transcript -> Gemini generateContent (JSON) -> PerformanceMetrics.

One non-streaming request per completed session. Any failure (HTTP error,
timeout, unparseable or wrongly-shaped JSON) is raised as AnalysisError;
the session controller treats that as "no summary" rather than retrying.
"""

import json
import logging
import re
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)

GENERATE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class AnalysisError(RuntimeError):
    """Scoring call failed or returned something that is not a metrics object."""


@dataclass(frozen=True)
class PerformanceMetrics:
    engagement_score: int
    objections_handled: int
    conversion_probability: int
    feedback: str
    strengths: tuple = field(default_factory=tuple)
    focus_areas: tuple = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict) -> "PerformanceMetrics":
        """Validate and normalize the scorer's JSON object."""
        if not isinstance(data, dict):
            raise AnalysisError(f"Expected a JSON object, got {type(data).__name__}")
        feedback = data.get("feedback")
        if not isinstance(feedback, str) or not feedback.strip():
            raise AnalysisError("Missing feedback in analysis result")
        return cls(
            engagement_score=_score(data, "engagementScore", upper=100),
            objections_handled=_score(data, "objectionsHandled", upper=None),
            conversion_probability=_score(data, "conversionProbability", upper=100),
            feedback=feedback.strip(),
            strengths=_string_list(data.get("strengths"), "strengths"),
            focus_areas=_string_list(data.get("focusAreas"), "focusAreas"),
        )

    def to_dict(self) -> dict:
        return {
            "engagementScore": self.engagement_score,
            "objectionsHandled": self.objections_handled,
            "conversionProbability": self.conversion_probability,
            "feedback": self.feedback,
            "strengths": list(self.strengths),
            "focusAreas": list(self.focus_areas),
        }

    def to_row(self, session_id: str) -> dict:
        return {
            "session_id": session_id,
            "engagement_score": self.engagement_score,
            "objections_handled": self.objections_handled,
            "conversion_probability": self.conversion_probability,
            "feedback": self.feedback,
            "strengths": list(self.strengths),
            "focus_areas": list(self.focus_areas),
        }


def _score(data, key, upper):
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise AnalysisError(f"{key} must be a number, got {value!r}")
    value = max(0, int(round(value)))
    return min(upper, value) if upper is not None else value


def _string_list(value, key) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if not isinstance(value, list):
        raise AnalysisError(f"{key} must be a list of strings, got {value!r}")
    return tuple(str(v) for v in value if str(v).strip())


def parse_metrics(text: str) -> PerformanceMetrics:
    """Parse the scorer's text (bare JSON or a ```json fenced block)."""
    if not text or not text.strip():
        raise AnalysisError("Empty analysis response")
    body = text.strip()
    match = _FENCE_RE.match(body)
    if match:
        body = match.group(1)
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise AnalysisError(f"Analysis response is not JSON: {e}") from e
    return PerformanceMetrics.from_dict(data)


def build_analysis_prompt(transcript: str, mode_label: str, knowledge_base: str) -> str:
    return (
        "Analyze this sales transcript.\n"
        f"Mode: {mode_label}\n\n"
        "Use the following PROPRIETARY KNOWLEDGE BASE:\n"
        f"{knowledge_base}\n\n"
        "Transcript:\n"
        f"{transcript}\n\n"
        "Return a JSON object with:\n"
        "- engagementScore: number (0-100)\n"
        "- objectionsHandled: number\n"
        "- conversionProbability: number (0-100)\n"
        "- feedback: string (2 sentences plain text advice)\n"
        "- strengths: array of short strings (what went well)\n"
        "- focusAreas: array of short strings (what to practice next)\n"
    )


def extract_text(response_json: dict) -> str:
    """Concatenate text parts of the first candidate."""
    if not isinstance(response_json, dict):
        raise AnalysisError(f"Analysis response is a {type(response_json).__name__}, not an object")
    candidates = response_json.get("candidates") or []
    if not isinstance(candidates, list) or not candidates:
        raise AnalysisError("Analysis response has no candidates")
    candidate = candidates[0]
    content = candidate.get("content") if isinstance(candidate, dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        raise AnalysisError("Analysis candidate has no content parts")
    texts = []
    for part in parts:
        if not isinstance(part, dict):
            raise AnalysisError(f"Unexpected content part {part!r}")
        text = part.get("text", "")
        if not isinstance(text, str):
            raise AnalysisError(f"Content part text is not a string: {text!r}")
        texts.append(text)
    return "".join(texts)


class SessionScorer:
    """Remote scoring client.

    Args:
        api_key: Gemini API key
        model: generateContent model name
        timeout: request timeout in seconds
        client: optional httpx.AsyncClient (tests pass one with a MockTransport)
    """

    def __init__(self, api_key, model="gemini-2.5-flash", timeout=60.0, client=None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = client
        self.calls = 0

    async def score(self, transcript: str, mode_label: str, knowledge_base: str) -> PerformanceMetrics:
        if not self.api_key:
            raise AnalysisError("Missing API Key")
        self.calls += 1
        payload = {
            "contents": [{"role": "user", "parts": [{"text": build_analysis_prompt(
                transcript, mode_label, knowledge_base)}]}],
            "generationConfig": {"responseMimeType": "application/json"},
        }
        url = GENERATE_URL.format(model=self.model)

        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            resp = await client.post(url, params={"key": self.api_key}, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as e:
            raise AnalysisError(f"Analysis request failed: {e}") from e
        except ValueError as e:
            raise AnalysisError(f"Analysis response is not JSON: {e}") from e
        finally:
            if owns_client:
                await client.aclose()

        metrics = parse_metrics(extract_text(body))
        logger.info("Analysis: engagement=%d objections=%d win=%d",
                    metrics.engagement_score, metrics.objections_handled,
                    metrics.conversion_probability)
        return metrics


def format_report(metrics: PerformanceMetrics) -> str:
    """Plain-text performance report shown after a session."""
    lines = [
        "SESSION COMPLETE - Performance Report",
        "",
        f"  Engagement:          {metrics.engagement_score}%",
        f"  Objections Handled:  {metrics.objections_handled}",
        f"  Win Probability:     {metrics.conversion_probability}%",
        "",
        "Coach Feedback:",
        f"  \"{metrics.feedback}\"",
    ]
    if metrics.strengths:
        lines += ["", "Strengths:"] + [f"  + {s}" for s in metrics.strengths]
    if metrics.focus_areas:
        lines += ["", "Focus Areas:"] + [f"  - {s}" for s in metrics.focus_areas]
    return "\n".join(lines)
