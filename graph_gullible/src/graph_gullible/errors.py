"""
Error types shared across GraphGullible.

Generator and persistence failures are recovered where they happen; the
remaining errors signal an operation the current state does not allow.
"""


class GraphGullibleError(Exception):
    """Base exception for GraphGullible errors"""
    pass


class ResponseGeneratorError(GraphGullibleError):
    """The bot reply could not be produced (network, quota, parse or schema)."""
    pass


class PersistenceError(GraphGullibleError):
    """A transcript or group assignment could not be written."""
    pass


class ConversationStateError(GraphGullibleError):
    """Operation not allowed in the current conversation step."""
    pass


class StudyFlowError(GraphGullibleError):
    """Invalid email, locked dashboard step or wrong survey code."""
    pass
