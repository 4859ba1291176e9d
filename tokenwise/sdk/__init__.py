"""
SDK for Tokenwise.

Wraps OpenAI clients so every chat completion is metered.
"""

from .openai_client import AsyncMonitoredOpenAI, MonitorOptions, MonitoredOpenAI, monitor

__all__ = ["AsyncMonitoredOpenAI", "MonitorOptions", "MonitoredOpenAI", "monitor"]
