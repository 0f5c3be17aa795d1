from .models import LLMAssistantMessage as LLMAssistantMessage
from .models import LLMMessage as LLMMessage
from .models import LLMProviderBase as LLMProviderBase
from .models import LLMRequest as LLMRequest
from .models import LLMResponseFormat as LLMResponseFormat
from .models import LLMToolCall as LLMToolCall
from .models import LLMToolUseMessage as LLMToolUseMessage
from .models import LLMUsage as LLMUsage
