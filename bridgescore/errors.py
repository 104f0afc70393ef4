"""Error taxonomy for the BridgeScore core.

The core raises these and leaves logging and user messaging to the caller.
"""


class BridgeScoreError(Exception):
    """Base class for every error raised by the core"""


class InvalidInputError(BridgeScoreError):
    """Transcript is empty or unusable and cannot be scored"""


class InvalidFrameworkError(BridgeScoreError):
    """Framework steps are duplicated, empty or do not sum to the expected total"""


class UnknownCallError(BridgeScoreError):
    def __init__(self, call_id: str):
        super().__init__(f"Call not found: {call_id}")
        self.call_id = call_id


class UnknownRuleVersionError(BridgeScoreError):
    def __init__(self, rule_version_id: str):
        super().__init__(f"Rule version not found: {rule_version_id}")
        self.rule_version_id = rule_version_id


class ScoringFailedError(BridgeScoreError):
    """The scorer rejected a transcript while rescoring; the prior score is kept"""


class PartialWriteError(BridgeScoreError):
    """The score replacement and its history entry could not be written together"""


class MissingRuleVersionError(BridgeScoreError):
    """A history entry was requested for a call scored without a rule version"""

    def __init__(self, call_id: str):
        super().__init__(f"Call {call_id} has no rule version; history entries need one")
        self.call_id = call_id
