"""
agentwire - vendor-neutral LLM event streams and a bounded agent loop.
"""

__version__ = "0.1.0"

from ididi import Graph as Graph

from .cancellation import CancellationSignal as CancellationSignal
from .events import StreamEvent as StreamEvent
from .jsonrepair import recover as recover
from .jsonrepair import repair_json as repair_json
from .llm.service import LLMService as LLMService
from .structured import parse_and_validate as parse_and_validate
from .tools import FunctionTool as FunctionTool
from .tools import Tool as Tool
from .tools import spec as spec
from .tools import tool as tool
from .agent import STOP as STOP
from .agent import Agent as Agent
from .agent import AgentConfig as AgentConfig
from .agent import Observers as Observers
from .agent import RunResult as RunResult
