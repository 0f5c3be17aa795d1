from typing import Annotated as Annotated

from .interface import ITool as ITool
from .interface import ToolSpec as ToolSpec
from .signature import spec as spec
from .tool import FunctionTool as FunctionTool
from .tool import Tool as Tool
from .tool import tool as tool
