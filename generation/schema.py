from __future__ import annotations

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError


class _LayerModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ChoicePayload(_LayerModel):
    # Rewards for generated choices are set by code, never by the model.
    label: str = Field(min_length=1, max_length=25)
    description: str = Field(min_length=1, max_length=150)


class DecisionPayload(_LayerModel):
    narrative: str = Field(min_length=20, max_length=400)
    choice_x: ChoicePayload = Field(alias="choiceX")
    choice_y: ChoicePayload = Field(alias="choiceY")

    def to_context(self) -> dict:
        return {
            "narrative": self.narrative,
            "choiceX": {"label": self.choice_x.label, "description": self.choice_x.description},
            "choiceY": {"label": self.choice_y.label, "description": self.choice_y.description},
        }


class IntroPayload(_LayerModel):
    narrative: str = Field(min_length=50, max_length=500)


class TerminalPayload(_LayerModel):
    narrative: str = Field(min_length=30, max_length=500)


class Layer1Response(_LayerModel):
    title: str = Field(min_length=5, max_length=50)
    emoji: str = Field(min_length=1, max_length=4)
    intro: IntroPayload
    decision1: DecisionPayload


class Layer2Response(_LayerModel):
    outcome_narrative: str = Field(alias="outcomeNarrative", min_length=20, max_length=300)
    decision2: DecisionPayload


class Layer3Response(_LayerModel):
    outcome_narrative: str = Field(alias="outcomeNarrative", min_length=20, max_length=300)
    terminal: TerminalPayload


def describe_validation_error(err: ValidationError) -> str:
    parts = []
    for issue in err.errors():
        loc = ".".join(str(x) for x in issue.get("loc", ()))
        parts.append(f"{loc}: {issue.get('msg', 'invalid')}")
    return "; ".join(parts)


# =========================
# NORMALIZATION
# =========================
def clip_text(text: str, limit: int) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


def _normalize_decision(d: DecisionPayload) -> DecisionPayload:
    return DecisionPayload.model_construct(
        narrative=clip_text(d.narrative, 400),
        choice_x=ChoicePayload.model_construct(label=d.choice_x.label[:25], description=d.choice_x.description[:150]),
        choice_y=ChoicePayload.model_construct(label=d.choice_y.label[:25], description=d.choice_y.description[:150]),
    )


def normalize_layer1(resp: Layer1Response) -> Layer1Response:
    return Layer1Response.model_construct(
        title=clip_text(resp.title, 50),
        emoji=resp.emoji[:4],
        intro=IntroPayload.model_construct(narrative=clip_text(resp.intro.narrative, 500)),
        decision1=_normalize_decision(resp.decision1),
    )


def normalize_layer2(resp: Layer2Response) -> Layer2Response:
    return Layer2Response.model_construct(
        outcome_narrative=clip_text(resp.outcome_narrative, 300),
        decision2=_normalize_decision(resp.decision2),
    )


def normalize_layer3(resp: Layer3Response) -> Layer3Response:
    return Layer3Response.model_construct(
        outcome_narrative=clip_text(resp.outcome_narrative, 300),
        terminal=TerminalPayload.model_construct(narrative=clip_text(resp.terminal.narrative, 500)),
    )
