"""RuleWatch - rule-driven account polling with LLM relevance scoring."""

__version__ = "0.1.0"
