"""Lead routing: rule evaluation and performance-driven rule tuning."""

from lead_dispatch.routing.rule_engine import RuleEngine, default_rules

__all__ = ["RuleEngine", "default_rules"]
