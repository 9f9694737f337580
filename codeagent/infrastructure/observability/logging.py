import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "codeagent",
    environment: str = "development"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=environment
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add conversation context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    # Runs bind the conversation they belong to
    conversation_id = structlog.contextvars.get_contextvars().get("conversation_id")
    if conversation_id and "conversation_id" not in event_dict:
        event_dict["conversation_id"] = conversation_id

    return event_dict


class AgentLogger:
    """Specialized logger for agent operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_tool_execution(
        self,
        tool_name: str,
        conversation_id: Optional[str],
        input_data: Dict[str, Any],
        output_data: Any = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        log = self.logger.info if success else self.logger.warning
        log(
            "tool_execution",
            tool_name=tool_name,
            conversation_id=conversation_id,
            input_data=input_data,
            output_data=output_data,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_phase_transition(
        self,
        conversation_id: str,
        phase: str,
        status: str,
        iteration: int,
        error: Optional[str] = None
    ):
        """Log loop phase transitions"""

        self.logger.info(
            "phase_transition",
            conversation_id=conversation_id,
            phase=phase,
            status=status,
            iteration=iteration,
            error=error
        )

    def log_memory_update(
        self,
        conversation_id: Optional[str],
        tier: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log memory updates"""

        self.logger.debug(
            "memory_update",
            conversation_id=conversation_id,
            tier=tier,
            action=action,
            details=details or {}
        )


# Global logger instance
agent_logger = AgentLogger("codeagent")
