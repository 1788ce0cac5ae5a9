"""AI-orchestration core for an interactive narrative simulation.

Turns structured game state into provider-agnostic chat requests:

  memory        - token-budgeted world/actor history with decay sampling.
  images        - per-request image registry and placeholder interleaving.
  prompts       - template filling, tag-based turn splitting, context layers.
  llm           - Gemini (native) and OpenAI-compatible (REST/SSE) clients.
  streaming     - live field extraction from partial JSON streams.
  supervisor    - retry/validation loop with status events.
  orchestrator  - one feature request end to end.
"""

from .errors import (  # noqa: F401
    LLMError,
    MissingStreamBodyError,
    OutputValidationError,
    ParseError,
    PromptError,
    StreamFormatError,
    TransportError,
)
from .images import ImageContextBuilder  # noqa: F401
from .llm import CancelToken, create_client, supports_json_mode  # noqa: F401
from .memory import build_actor_memory, build_world_memory  # noqa: F401
from .prompts import (  # noqa: F401
    build_context_messages,
    fill_prompt,
    parse_prompt_structure,
)
from .streaming import extract_partial_field  # noqa: F401
from .supervisor import StatusReporter, robust_generate  # noqa: F401
from .tokens import estimate_token_count  # noqa: F401
