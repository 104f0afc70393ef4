import pytest

from bridgescore.rules import SignalGroup, StepRule, default_rule_set


DISCOVERY_CALL = """Rep: What is the biggest problem your support team is facing right now?
Prospect: Our biggest challenge is the ticket backlog. It’s frustrating and we are losing customers because of it.
Rep: How is that affecting revenue?
Prospect: It's costing us renewals every month.
Rep: Customers like you usually see faster results within a few weeks.
Rep: Let's schedule a follow-up demo. Does Tuesday at 10:30 work?
Prospect: Tuesday works.
Rep: Great, I'll send the calendar invite.
"""


@pytest.fixture
def discovery_transcript():
    """Clear pain discovery and a booked follow-up, no budget/authority/timeline talk"""
    return DISCOVERY_CALL


@pytest.fixture
def lenient_rule_set():
    """bridge-v1 with a qualify rule that gives full credit for any question"""
    rule_set = default_rule_set()
    rule_set.name = "bridge-v1-lenient"
    rule_set.steps["qualify"] = StepRule(
        groups=[SignalGroup(label="questions", patterns=[r"\?"], count_occurrences=True, full_min=1, partial_min=1)],
        full_note="Qualifying questions asked",
        partial_note="Some qualifying questions",
        none_note="No qualifying questions",
    )
    return rule_set
