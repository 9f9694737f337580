from typing import Dict, Any, List, Optional, Callable, Awaitable
from dataclasses import dataclass
import inspect
import json

import structlog

from codeagent.infrastructure.config.settings import PermissionMode
from .tool_models import ToolExecutionContext

logger = structlog.get_logger(__name__)

# (tool_name, permission, description, params, context) -> approved?
Approver = Callable[[str, str, str, Dict[str, Any], ToolExecutionContext], Awaitable[bool]]

PERMISSION_DESCRIPTIONS = {
    "filesystem.read": "Read files from your workspace",
    "filesystem.write": "Write, create, or delete files/directories in your workspace",
    "terminal.execute": "Execute commands in the terminal",
    "interaction.userInput": "Ask you for input or choices",
    "editor.read": "Read content from your open editors",
    "editor.write": "Modify content in your open editors",
    "workspace.info.read": "Read general workspace and project information",
}


@dataclass
class PermissionDecision:
    granted: bool
    permission: Optional[str] = None
    reason: Optional[str] = None


class PermissionManager:
    """Decides whether a tool may use the permissions it declares"""

    GLOBAL_SESSION = "global_session"

    def __init__(
        self,
        policy: Optional[Dict[str, PermissionMode]] = None,
        default_mode: PermissionMode = PermissionMode.DENY,
        approver: Optional[Approver] = None
    ):
        self.policy: Dict[str, PermissionMode] = {
            name: PermissionMode(mode) for name, mode in (policy or {}).items()
        }
        self.default_mode = PermissionMode(default_mode)
        self.approver = approver
        self._session_grants: set = set()

    @staticmethod
    def describe(permission: str) -> str:
        return PERMISSION_DESCRIPTIONS.get(permission, permission)

    def set_mode(self, permission: str, mode: PermissionMode):
        self.policy[permission] = PermissionMode(mode)

    async def check_permissions(
        self,
        tool_name: str,
        required_permissions: List[str],
        params: Dict[str, Any],
        context: ToolExecutionContext
    ) -> PermissionDecision:
        """Resolve every required permission; the first denial wins"""

        for permission in required_permissions or []:
            if permission in context.granted_permissions:
                continue

            mode = self.policy.get(permission, self.default_mode)

            if mode == PermissionMode.ALLOW:
                continue

            if mode == PermissionMode.DENY:
                return self._deny(
                    tool_name, permission, context,
                    f"Permission '{permission}' is disabled by policy"
                )

            session_key = self._session_key(context.conversation_id, permission)
            if mode == PermissionMode.PROMPT_SESSION and session_key in self._session_grants:
                continue

            if self.approver is None:
                return self._deny(
                    tool_name, permission, context,
                    f"Permission '{permission}' requires approval but no approver is configured"
                )

            approved = await self._ask(tool_name, permission, params, context)
            if not approved:
                return self._deny(
                    tool_name, permission, context,
                    f"Action for tool '{tool_name}' (permission: '{permission}') was denied by user"
                )

            if mode == PermissionMode.PROMPT_SESSION:
                self._session_grants.add(session_key)

            logger.info(
                "permission_granted_by_prompt",
                tool_name=tool_name,
                permission=permission,
                conversation_id=context.conversation_id
            )

        return PermissionDecision(granted=True)

    def clear_session_permissions(self, conversation_id: Optional[str] = None):
        """Forget prompt-session approvals for one conversation, or all of them"""
        if conversation_id is None:
            self._session_grants.clear()
            return
        prefix = f"{conversation_id}::"
        self._session_grants = {key for key in self._session_grants if not key.startswith(prefix)}

    def _session_key(self, conversation_id: Optional[str], permission: str) -> str:
        return f"{conversation_id or self.GLOBAL_SESSION}::{permission}"

    async def _ask(
        self,
        tool_name: str,
        permission: str,
        params: Dict[str, Any],
        context: ToolExecutionContext
    ) -> bool:
        preview = json.dumps(params, indent=2, default=str)[:200]
        description = (
            f"Tool '{tool_name}' requires permission: '{self.describe(permission)}' "
            f"to perform its task with parameters: {preview}"
        )
        try:
            answer = self.approver(tool_name, permission, description, params, context)
            if inspect.isawaitable(answer):
                answer = await answer
            return bool(answer)
        except Exception as e:
            logger.error(
                "permission_approver_failed",
                tool_name=tool_name,
                permission=permission,
                error=str(e),
                exc_info=True
            )
            return False

    def _deny(
        self,
        tool_name: str,
        permission: str,
        context: ToolExecutionContext,
        reason: str
    ) -> PermissionDecision:
        logger.warning(
            "permission_denied",
            tool_name=tool_name,
            permission=permission,
            conversation_id=context.conversation_id,
            reason=reason
        )
        if context.dispatcher is not None:
            context.dispatcher.system_warning(
                f"Execution of tool '{tool_name}' denied: {reason}",
                details={"tool_name": tool_name, "permission": permission},
                conversation_id=context.conversation_id,
                source="PermissionManager"
            )
        return PermissionDecision(granted=False, permission=permission, reason=reason)
