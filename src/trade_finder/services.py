from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import requests

from .alerts import AlertDispatcher, AlertRouter
from .analysis import StructuredAnalyzer
from .conversations import ConversationManager, ConversationRepository
from .datasources import DataSourceRegistry, build_default_registry
from .lifecycle import TradeLifecycleManager
from .openai_client import OpenAIClient
from .operation_log import OperationLogService
from .trade_finder import TradeFinderService
from .trade_statistics import TradeStatisticsService
from .trade_store import TradeRepository
from .workflow import WorkflowExecutor


@dataclass
class FinderServices:
    registry: DataSourceRegistry
    ai_client: OpenAIClient
    trades: TradeRepository
    operation_log: OperationLogService
    dispatcher: AlertDispatcher
    finder: TradeFinderService
    statistics: TradeStatisticsService
    lifecycle: TradeLifecycleManager
    conversations: ConversationManager
    workflow: WorkflowExecutor
    analyzer: StructuredAnalyzer


def build_services(db_path: Path | None = None, session: requests.Session | None = None) -> FinderServices:
    """Wire every collaborator explicitly; there is no discovery step."""
    session = session or requests.Session()
    registry = build_default_registry(db_path)
    ai_client = OpenAIClient(session=session)
    trades = TradeRepository(db_path)
    operation_log = OperationLogService(db_path)
    dispatcher = AlertDispatcher(trades, AlertRouter(session=session))
    statistics = TradeStatisticsService(trades)
    conversations = ConversationManager(ConversationRepository(db_path), trades, ai_client)
    return FinderServices(
        registry=registry,
        ai_client=ai_client,
        trades=trades,
        operation_log=operation_log,
        dispatcher=dispatcher,
        finder=TradeFinderService(registry, ai_client, trades, dispatcher, operation_log),
        statistics=statistics,
        lifecycle=TradeLifecycleManager(trades, statistics, operation_log),
        conversations=conversations,
        workflow=WorkflowExecutor(registry, ai_client, conversations, operation_log),
        analyzer=StructuredAnalyzer(ai_client, operation_log),
    )
