from perseus.agents.base import BaseAgent
from perseus.agents.data_processing import DataProcessingAgent
from perseus.agents.execution import ExecutionAgent
from perseus.agents.prompt_engineering import PromptEngineeringAgent
from perseus.agents.risk_management import RiskManagementAgent
from perseus.agents.strategy import StrategyAgent

__all__ = [
    "BaseAgent",
    "DataProcessingAgent",
    "ExecutionAgent",
    "PromptEngineeringAgent",
    "RiskManagementAgent",
    "StrategyAgent",
]
