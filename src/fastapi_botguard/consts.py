IS_SHIELDED_ENDPOINT_KEY = "__shielded__"
"""Callable with this attribute evaluating to `True` can be taken as 'shielded'"""

SESSION_COOKIE_NAME = "botguard_sid"
"""Cookie carrying the client half of the session identity key"""

CHALLENGE_HEADER = "X-BotGuard-Challenge"
DECISION_HEADER = "X-BotGuard-Decision"
SCORE_HEADER = "X-BotGuard-Score"
