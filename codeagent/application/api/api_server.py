from typing import Any, Dict, Iterable, Literal, Optional
from contextlib import asynccontextmanager
from dataclasses import dataclass
import asyncio

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from codeagent.application.websocket.connection_manager import ConnectionManager
from codeagent.domain.context.memory.key_value_store import KeyValueStore
from codeagent.domain.context.memory_manager import MemoryManager
from codeagent.domain.context.state.state_store import ConversationStateStore
from codeagent.domain.events.event_dispatcher import EventDispatcher
from codeagent.domain.models.conversation_state import utcnow
from codeagent.domain.orchestration.core.base_strategy import BaseConversationStrategy
from codeagent.domain.orchestration.core.conversation_service import ConversationService
from codeagent.domain.orchestration.core.interaction_broker import InteractionBroker
from codeagent.domain.orchestration.core.loop_controller import LoopController
from codeagent.domain.orchestration.core.reasoning import Planner, ReasoningService, RequestClassifier
from codeagent.domain.orchestration.router.orchestration_router import OrchestrationRouter
from codeagent.domain.streaming.streaming_handler import StreamingHandler
from codeagent.domain.tool.builtin.interaction import builtin_tools
from codeagent.domain.tool.permission_manager import Approver, PermissionManager
from codeagent.domain.tool.tool_models import ToolDefinition
from codeagent.domain.tool.tool_registry import ToolRegistry
from codeagent.infrastructure.config.settings import AgentSettings, load_settings
from codeagent.infrastructure.observability.logging import setup_logging
from .route.conversation import router as conversation_router
from codeagent.application.websocket.ws_server import router as websocket_router

logger = structlog.get_logger(__name__)


@dataclass
class AgentContainer:
    """Everything one process of the agent core needs"""
    settings: AgentSettings
    dispatcher: EventDispatcher
    permission_manager: PermissionManager
    registry: ToolRegistry
    memory: MemoryManager
    state_store: ConversationStateStore
    broker: InteractionBroker
    strategy: BaseConversationStrategy
    service: ConversationService
    connection_manager: ConnectionManager
    streaming_handler: StreamingHandler

    def close(self):
        self.streaming_handler.detach_all()
        self.broker.close()
        self.dispatcher.dispose()


def build_container(
    reasoning: ReasoningService,
    settings: Optional[AgentSettings] = None,
    tools: Iterable[ToolDefinition] = (),
    store: Optional[KeyValueStore] = None,
    strategy: Literal["loop", "router"] = "loop",
    planner: Optional[Planner] = None,
    classifier: Optional[RequestClassifier] = None,
    approver: Optional[Approver] = None,
    host: Optional[Dict[str, Any]] = None
) -> AgentContainer:
    """Wire the components together, explicitly and without globals"""

    settings = settings or load_settings()
    dispatcher = EventDispatcher(max_history=settings.event_history_size)
    permission_manager = PermissionManager(
        policy=settings.permission_policy,
        default_mode=settings.default_permission_mode,
        approver=approver
    )
    registry = ToolRegistry(
        permission_manager=permission_manager,
        dispatcher=dispatcher,
        default_timeout=settings.tool_timeout_seconds
    )
    registry.register_many(builtin_tools())
    registry.register_many(tools)

    memory = MemoryManager(
        store=store,
        short_term_capacity=settings.short_term_capacity,
        search_limit=settings.long_term_search_limit
    )
    state_store = ConversationStateStore(max_iterations=settings.max_iterations)
    broker = InteractionBroker(dispatcher)

    strategy_args = dict(
        dispatcher=dispatcher,
        registry=registry,
        memory=memory,
        reasoning=reasoning,
        settings=settings,
        state_store=state_store,
        broker=broker,
        host=host
    )
    if strategy == "router":
        if planner is None:
            raise ValueError("The router strategy needs a planner")
        runner = OrchestrationRouter(planner=planner, classifier=classifier, **strategy_args)
    else:
        runner = LoopController(**strategy_args)

    service = ConversationService(runner, state_store, memory, dispatcher, permission_manager)
    connection_manager = ConnectionManager()

    return AgentContainer(
        settings=settings,
        dispatcher=dispatcher,
        permission_manager=permission_manager,
        registry=registry,
        memory=memory,
        state_store=state_store,
        broker=broker,
        strategy=runner,
        service=service,
        connection_manager=connection_manager,
        streaming_handler=StreamingHandler(dispatcher, connection_manager)
    )


def create_app(container: AgentContainer, configure_logging: bool = True) -> FastAPI:
    """FastAPI application exposing the agent core"""

    settings = container.settings
    if configure_logging:
        setup_logging(
            log_level=settings.log_level,
            log_format=settings.log_format,
            service_name=settings.service_name,
            environment=settings.environment
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        health_task = asyncio.create_task(container.connection_manager.health_check())
        logger.info("Agent server started", strategy=container.strategy.name)
        try:
            yield
        finally:
            health_task.cancel()
            await container.connection_manager.disconnect_all()
            container.close()
            logger.info("Agent server shutdown")

    app = FastAPI(title="Code Agent Server", lifespan=lifespan)
    app.state.container = container

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(conversation_router)
    app.include_router(websocket_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        info = container.strategy.get_info()
        return {
            "status": "healthy",
            "strategy": info["name"],
            "tools": len(info["tools"]),
            "max_iterations": info["max_iterations"],
            "active_connections": len(container.connection_manager.active_connections),
            "streamed_conversations": container.streaming_handler.get_info()["attached_conversations"],
            "timestamp": utcnow().isoformat()
        }

    return app


def serve(container: AgentContainer, host: str = "0.0.0.0", port: int = 8000):
    import uvicorn
    uvicorn.run(create_app(container), host=host, port=port)
