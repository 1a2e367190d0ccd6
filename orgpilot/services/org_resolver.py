"""Decide which connected Salesforce org a Slack message is about.

The resolver is an ordered chain of small strategy objects.  Each returns
``matched`` (stop, use this org), ``ambiguous`` (stop, ask the user) or
``no_match`` (try the next strategy).  When the chain ends without a match
the caller posts the interactive org picker.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import FrozenSet
from typing import List
from typing import Optional
from typing import Sequence

from orgpilot.models.enums import OrgType

logger = logging.getLogger(__name__)

STOP_WORDS: FrozenSet[str] = frozenset(
    {"org", "the", "in", "my", "a", "an", "for", "of", "and", "llc", "inc", "corp", "ltd"}
)

DEV_KEYWORDS: Sequence[str] = (
    "create",
    "update",
    "write",
    "deploy",
    "build",
    "add a",
    "source code",
    "class body",
    "trigger body",
    "apex class",
    "apex trigger",
    "lwc source",
    "flow definition",
    "flow metadata",
    "run test",
    "run apex test",
    "code coverage",
    "test class",
    "refactor",
    "fix the code",
    "modify",
    "change the code",
)

PROD_KEYWORDS: Sequence[str] = (
    "how many",
    "count",
    "list all",
    "show me the",
    "what are",
    "who has",
    "which users",
    "permission set",
    "report",
    "dashboard",
    "record",
    "query",
    "find all",
    "look up",
)

_TOKEN_SPLIT = re.compile(r"[\s\-_.,]+")
_MIN_TOKEN_LEN = 3


class ResolutionOutcome(str, Enum):
    MATCHED = "matched"
    AMBIGUOUS = "ambiguous"
    NO_MATCH = "no_match"


@dataclass(frozen=True)
class OrgCandidate:
    id: int
    name: str
    type: OrgType

    @property
    def is_development(self) -> bool:
        return self.type in (OrgType.SANDBOX, OrgType.DEVELOPER)


@dataclass
class ResolutionContext:
    message_text: str
    orgs: List[OrgCandidate]
    thread_org_id: Optional[int] = None

    @property
    def lowered(self) -> str:
        return self.message_text.lower()


@dataclass
class StrategyResult:
    outcome: ResolutionOutcome
    org: Optional[OrgCandidate] = None
    candidates: List[OrgCandidate] = field(default_factory=list)

    @classmethod
    def matched(cls, org: OrgCandidate) -> "StrategyResult":
        return cls(ResolutionOutcome.MATCHED, org=org, candidates=[org])

    @classmethod
    def ambiguous(cls, candidates: List[OrgCandidate]) -> "StrategyResult":
        return cls(ResolutionOutcome.AMBIGUOUS, candidates=list(candidates))

    @classmethod
    def no_match(cls) -> "StrategyResult":
        return cls(ResolutionOutcome.NO_MATCH)


@dataclass
class Resolution:
    org: Optional[OrgCandidate]
    strategy: Optional[str]
    candidates: List[OrgCandidate]

    @property
    def needs_picker(self) -> bool:
        return self.org is None


def name_tokens(name: str) -> List[str]:
    """Significant lower-case tokens of an org display name."""

    tokens = _TOKEN_SPLIT.split(name.lower())
    return [t for t in tokens if len(t) >= _MIN_TOKEN_LEN and t not in STOP_WORDS]


def _contains_any(text: str, keywords: Sequence[str]) -> bool:
    return any(keyword in text for keyword in keywords)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class ResolutionStrategy:
    name = "base"

    def resolve(self, ctx: ResolutionContext) -> StrategyResult:  # pragma: no cover
        raise NotImplementedError


class SingleOrgStrategy(ResolutionStrategy):
    name = "single_org"

    def resolve(self, ctx: ResolutionContext) -> StrategyResult:
        if len(ctx.orgs) == 1:
            return StrategyResult.matched(ctx.orgs[0])
        return StrategyResult.no_match()


class ThreadAffinityStrategy(ResolutionStrategy):
    """Reuse the org of an earlier job in the same Slack thread."""

    name = "thread_affinity"

    def resolve(self, ctx: ResolutionContext) -> StrategyResult:
        if ctx.thread_org_id is None:
            return StrategyResult.no_match()
        for org in ctx.orgs:
            if org.id == ctx.thread_org_id:
                return StrategyResult.matched(org)
        return StrategyResult.no_match()


class NameMatchStrategy(ResolutionStrategy):
    name = "name_match"

    def resolve(self, ctx: ResolutionContext) -> StrategyResult:
        text = ctx.lowered
        matches = []
        for org in ctx.orgs:
            full_name = org.name.lower()
            if full_name and full_name in text:
                matches.append(org)
            elif any(token in text for token in name_tokens(org.name)):
                matches.append(org)

        if len(matches) == 1:
            return StrategyResult.matched(matches[0])
        if len(matches) > 1:
            return StrategyResult.ambiguous(matches)
        return StrategyResult.no_match()


class IntentStrategy(ResolutionStrategy):
    """Development wording picks the only sandbox; reporting wording the only production org."""

    name = "intent"

    def resolve(self, ctx: ResolutionContext) -> StrategyResult:
        text = ctx.lowered

        if _contains_any(text, DEV_KEYWORDS):
            dev_orgs = [o for o in ctx.orgs if o.is_development]
            if len(dev_orgs) == 1:
                return StrategyResult.matched(dev_orgs[0])

        if _contains_any(text, PROD_KEYWORDS):
            prod_orgs = [o for o in ctx.orgs if o.type == OrgType.PRODUCTION]
            if len(prod_orgs) == 1:
                return StrategyResult.matched(prod_orgs[0])

        return StrategyResult.no_match()


DEFAULT_STRATEGIES: Sequence[ResolutionStrategy] = (
    SingleOrgStrategy(),
    ThreadAffinityStrategy(),
    NameMatchStrategy(),
    IntentStrategy(),
)


class OrgResolver:
    def __init__(self, strategies: Sequence[ResolutionStrategy] = DEFAULT_STRATEGIES):
        self.strategies = list(strategies)

    def resolve(self, ctx: ResolutionContext) -> Resolution:
        for strategy in self.strategies:
            result = strategy.resolve(ctx)
            if result.outcome == ResolutionOutcome.MATCHED:
                logger.info(f"Resolved org {result.org.id} via {strategy.name}")
                return Resolution(org=result.org, strategy=strategy.name, candidates=result.candidates)
            if result.outcome == ResolutionOutcome.AMBIGUOUS:
                logger.info(f"{strategy.name} matched {len(result.candidates)} orgs; asking the user")
                break

        return Resolution(org=None, strategy=None, candidates=list(ctx.orgs))
