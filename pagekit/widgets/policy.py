"""
Policy evaluation: visibility and enablement gates for widgets.
"""
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from ..expressions import evaluate_condition
from ..model.page import Policy
from ..providers import AuthProvider, auth_functions


@dataclass(frozen=True)
class PolicyDecision:
    visible: bool = True
    enabled: bool = True


ALLOW = PolicyDecision()
DENY = PolicyDecision(visible=False, enabled=False)


class PolicyEvaluator:
    """
    Roles and permissions are any-of checks applied before the `visible`
    expression. Expressions see `user` plus `hasRole()` / `hasPermission()`.
    """
    def __init__(self, auth: AuthProvider, functions: Optional[Mapping[str, Callable]] = None):
        self.auth = auth
        self.functions = dict(functions or {})

    def evaluate(self, policy: Optional[Policy], scope: Optional[Mapping[str, Any]] = None) -> PolicyDecision:
        """
        Raises:
            ExpressionError: When a policy expression is malformed
        """
        if policy is None:
            return ALLOW
        context = self.auth.context()
        if policy.roles and not any(context.has_role(role) for role in policy.roles):
            return DENY
        if policy.permissions and not any(context.has_permission(p) for p in policy.permissions):
            return DENY

        local = dict(scope or {})
        local.setdefault("user", context.as_scope())
        functions = {**self.functions, **auth_functions(context)}
        if not evaluate_condition(policy.visible, local, functions):
            return DENY
        return PolicyDecision(True, evaluate_condition(policy.enabled, local, functions))
