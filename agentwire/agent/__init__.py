from .base import Agent as Agent
from .config import STOP as STOP
from .config import AgentConfig as AgentConfig
from .config import Observers as Observers
from .dispatcher import ILogger as ILogger
from .dispatcher import LoggingToolDispatcher as LoggingToolDispatcher
from .dispatcher import ToolDispatcher as ToolDispatcher
from .models import AgentStep as AgentStep
from .models import RunResult as RunResult
from .models import StreamOutcome as StreamOutcome
from .models import ToolExecutionResult as ToolExecutionResult
