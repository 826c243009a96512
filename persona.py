"""Persona instructions for live coaching and roleplay sessions.

Builds the system instruction sent with the live session setup from:
  1. the training settings (mode, prospect persona, intensity)
  2. the sales knowledge base excerpt
  3. roleplay hidden state (budget, competitor, decision maker, ...)
  4. the user's uploaded company documents
  5. recent persisted messages for the session, if any

Hidden state is drawn once per session from fixed option sets with an
injected random source, so tests can pin it.
"""

import random
from dataclasses import dataclass
from pathlib import Path

MODES = ("strategy", "roleplay", "coaching")
INTENSITIES = ("easy", "normal", "hard")

KNOWLEDGE_BASE_EXCERPT = """\
SALES METHODOLOGY: "BE USEFUL NOW" (BUN) CONVERSATION FRAMEWORK
- Before You Go: prepare; review the prospect and anticipate objections.
- Expectations: set clear expectations early and tell the truth, even when it is hard.
- Unique Connections: build real rapport; be direct, avoid corporate speak.
- Set an Agenda: agree on the agenda at the start and keep to it.
- Explore Their World: discovery before solutions. Quantify the problem with
  DECAF (Details, Elapsed time, Cost, Effect, Affect/Feel).
- Finding Time/Money/Resources: confirm motivation, timing, budget and authority.
- Understand Who Cares: map every stakeholder and the real decision maker.
- Let Them Know You: short, credible proof (30-60 second stories, case studies).
- Next Steps: never end without a concrete, agreed next step.
Objection handling: acknowledge, ask a clarifying question, quantify the cost of
inaction, then answer. Talk less than the prospect; ask more questions than you
make statements.
"""

# Roleplay hidden state option sets
BUDGET_CAPS = (
    "$15k per year, hard ceiling",
    "$40k, but only if it replaces an existing tool",
    "No budget allocated until next fiscal quarter",
    "$100k approved, but procurement wants 3 quotes",
    "Budget exists only if ROI is proven within 6 months",
)
HIDDEN_COMPETITORS = (
    "Already in late-stage talks with a cheaper competitor",
    "Current vendor offered a 30% renewal discount",
    "An internal team claims they can build it themselves",
    "No competitor; the real risk is doing nothing",
    "A board member is pushing a vendor from their network",
)
DECISION_MAKERS = (
    "The CFO signs off; the prospect is only an evaluator",
    "The prospect decides alone but needs IT security approval",
    "A buying committee of four; the VP of Operations has veto",
    "The CEO decides, and the prospect is afraid to escalate",
    "The prospect is the decision maker but is new in the role",
)
TIMELINE_CONSTRAINTS = (
    "Must go live before the end of the quarter",
    "No urgency; nothing changes for six months",
    "Contract with the current vendor expires in 60 days",
    "A reorganisation freezes purchases after next month",
)
PAIN_POINTS = (
    "Team loses hours each week to manual reporting",
    "Churn rose last quarter and leadership wants answers",
    "Pipeline visibility is poor and forecasts keep slipping",
    "New hires take too long to ramp up",
)


@dataclass(frozen=True)
class SalesSettings:
    mode: str = "roleplay"
    persona: str = "Skeptical VP of Sales at a mid-size SaaS company"
    intensity: str = "normal"

    def __post_init__(self):
        if self.mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {self.mode!r}")
        if self.intensity not in INTENSITIES:
            raise ValueError(f"intensity must be one of {INTENSITIES}, got {self.intensity!r}")

    @property
    def is_coaching(self) -> bool:
        return self.mode == "coaching"

    @property
    def label(self) -> str:
        return "Live Coaching" if self.is_coaching else "Live Roleplay"

    @property
    def title(self) -> str:
        return "Sales Architect" if self.is_coaching else self.persona

    @property
    def analysis_mode(self) -> str:
        if self.is_coaching:
            return "Coaching Session (Mentor & Mentee)"
        return "Roleplay (Prospect & Salesperson)"


@dataclass(frozen=True)
class UserDocument:
    filename: str
    content: str


@dataclass(frozen=True)
class HiddenState:
    """Roleplay-only facts the prospect withholds unless discovery earns them."""
    budget_cap: str
    hidden_competitor: str
    real_decision_maker: str
    timeline_constraint: str | None = None
    pain_point: str | None = None

    def to_prompt(self) -> str:
        lines = [
            f"- Budget cap: {self.budget_cap}",
            f"- Hidden competitor situation: {self.hidden_competitor}",
            f"- Real decision maker: {self.real_decision_maker}",
        ]
        if self.timeline_constraint:
            lines.append(f"- Timeline constraint: {self.timeline_constraint}")
        if self.pain_point:
            lines.append(f"- Underlying pain point: {self.pain_point}")
        return "\n".join(lines)


def generate_hidden_state(rng: random.Random | None = None) -> HiddenState:
    """Uniform pick from each option set using the injected random source."""
    rng = rng or random.Random()
    return HiddenState(
        budget_cap=rng.choice(BUDGET_CAPS),
        hidden_competitor=rng.choice(HIDDEN_COMPETITORS),
        real_decision_maker=rng.choice(DECISION_MAKERS),
        timeline_constraint=rng.choice(TIMELINE_CONSTRAINTS),
        pain_point=rng.choice(PAIN_POINTS),
    )


def build_document_context(documents) -> str:
    if not documents:
        return ""
    blocks = "\n".join(f"--- Document: {d.filename} ---\n{d.content}\n" for d in documents)
    return (
        "*** USER PROVIDED COMPANY CONTEXT ***\n"
        "The user has uploaded the following documents about their company/product. "
        "Use this information to tailor your advice and roleplay specifics.\n\n"
        f"{blocks}\n"
        "*************************************"
    )


def build_history_context(messages) -> str:
    """Previously persisted turns ({role, content}) as a short recap."""
    if not messages:
        return ""
    lines = [f"{m.get('role', 'user')}: {m.get('content', '')}" for m in messages if m.get("content")]
    if not lines:
        return ""
    return "PREVIOUS CONVERSATION IN THIS SESSION:\n" + "\n".join(lines)


def build_system_instruction(settings: SalesSettings, documents=(), hidden_state: HiddenState | None = None,
                             history=(), knowledge_base: str = KNOWLEDGE_BASE_EXCERPT) -> str:
    parts = []
    user_context = build_document_context(documents)

    if settings.is_coaching:
        parts.append(
            "You are the Sales Architect, a master sales coach.\n"
            "Your goal: listen to the user (a salesperson), ask clarifying questions, and give "
            "advice based strictly on the knowledge base below.\n"
            "Persona: encouraging, punchy, direct. Use short sentences.\n"
            "Do not act as a prospect. Act as a mentor."
        )
        parts.append(f"KNOWLEDGE BASE:\n{knowledge_base}")
    else:
        parts.append(
            "You are Sales Architect's live roleplay module.\n"
            f"Current scenario: {settings.persona}.\n"
            f"Difficulty: {settings.intensity}.\n"
            "Act exactly as the prospect described. Do not break character.\n"
            "If 'hard', be difficult, interrupt, and challenge the user.\n"
            "If 'easy', be agreeable but ask standard questions."
        )
        if hidden_state is not None:
            parts.append(
                "HIDDEN STATE (never volunteer these; reveal one only when the user earns it "
                "with a good discovery question):\n" + hidden_state.to_prompt()
            )

    if user_context:
        parts.append(user_context)
        if not settings.is_coaching:
            parts.append(
                "NOTE: You only know the information in the user context if it would be publicly "
                "available or if the user mentioned it. Challenge the user on pricing or features "
                "if they contradict the documents."
            )

    recap = build_history_context(history)
    if recap:
        parts.append(recap)

    if not settings.is_coaching:
        parts.append("Start the conversation immediately by greeting the user as the prospect would.")

    return "\n\n".join(parts)


def load_documents(paths) -> list[UserDocument]:
    """Read plain-text documents from disk for the company context."""
    docs = []
    for path in paths:
        path = Path(path).expanduser()
        docs.append(UserDocument(filename=path.name, content=path.read_text(errors="replace").strip()))
    return docs
