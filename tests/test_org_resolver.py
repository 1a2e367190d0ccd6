import pytest

from orgpilot.models.enums import OrgType
from orgpilot.services.org_resolver import IntentStrategy
from orgpilot.services.org_resolver import NameMatchStrategy
from orgpilot.services.org_resolver import OrgCandidate
from orgpilot.services.org_resolver import OrgResolver
from orgpilot.services.org_resolver import ResolutionContext
from orgpilot.services.org_resolver import ResolutionOutcome
from orgpilot.services.org_resolver import name_tokens

PROD = OrgCandidate(id=1, name="Acme Production", type=OrgType.PRODUCTION)
UAT = OrgCandidate(id=2, name="Acme UAT Sandbox", type=OrgType.SANDBOX)
DEV = OrgCandidate(id=3, name="Globex Dev", type=OrgType.DEVELOPER)


def resolve(text, orgs, thread_org_id=None):
    return OrgResolver().resolve(ResolutionContext(message_text=text, orgs=orgs, thread_org_id=thread_org_id))


def test_single_org_always_wins():
    resolution = resolve("create an apex class", [PROD])

    assert resolution.org == PROD
    assert resolution.strategy == "single_org"


def test_thread_affinity_beats_name_match():
    resolution = resolve("what about globex?", [PROD, UAT, DEV], thread_org_id=PROD.id)

    assert resolution.org == PROD
    assert resolution.strategy == "thread_affinity"


def test_thread_affinity_ignores_org_no_longer_connected():
    resolution = resolve("hello again", [PROD, UAT], thread_org_id=99)

    assert resolution.org is None
    assert resolution.needs_picker


def test_name_match_by_token():
    resolution = resolve("how many leads in uat?", [PROD, UAT])

    assert resolution.org == UAT
    assert resolution.strategy == "name_match"


def test_name_match_ambiguous_goes_to_picker():
    # "acme" matches both orgs; intent must not run after an ambiguous match.
    resolution = resolve("how many accounts in acme", [PROD, UAT])

    assert resolution.org is None
    assert resolution.candidates == [PROD, UAT]


def test_name_match_ignores_stop_words_and_short_tokens():
    assert name_tokens("The Acme Org, Inc.") == ["acme"]
    assert name_tokens("QA-1 UK") == []

    orgs = [OrgCandidate(4, "The Org", OrgType.SANDBOX), PROD]
    result = NameMatchStrategy().resolve(ResolutionContext(message_text="show me the list of orgs", orgs=orgs))
    assert result.outcome == ResolutionOutcome.NO_MATCH


def test_intent_dev_keywords_pick_only_sandbox():
    resolution = resolve("please create a trigger on Opportunity", [PROD, UAT])

    assert resolution.org == UAT
    assert resolution.strategy == "intent"


def test_intent_prod_keywords_pick_only_production():
    resolution = resolve("how many opportunities closed last month", [PROD, UAT])

    assert resolution.org == PROD
    assert resolution.strategy == "intent"


def test_intent_with_two_dev_orgs_falls_through_to_prod_keywords():
    orgs = [PROD, UAT, OrgCandidate(id=5, name="Staging Box", type=OrgType.SANDBOX)]

    result = IntentStrategy().resolve(ResolutionContext(message_text="update the report filters", orgs=orgs))

    assert result.outcome == ResolutionOutcome.MATCHED
    assert result.org == PROD


@pytest.mark.parametrize("text", ["hello there", "update the handler class"])
def test_no_signal_means_picker(text):
    orgs = [PROD, UAT, OrgCandidate(id=6, name="Second Sandbox", type=OrgType.SANDBOX)]

    resolution = resolve(text, orgs)

    assert resolution.needs_picker
    assert resolution.strategy is None
    assert resolution.candidates == orgs
