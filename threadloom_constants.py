"""Shared constants for Threadloom.

Import-safe module with no dependencies; it can be imported from anywhere
without risk of circular imports.
"""

OPENAI_BASE_URL = "https://api.openai.com/v1"
GOOGLE_OPENAI_COMPAT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai"

AIDE_DEFAULT_BASE_URL = "https://aide-llm-api.example.internal"
AIDE_ANTHROPIC_VERSION = "bedrock-2023-05-31"
AIDE_AZURE_API_VERSION = "2024-10-21"
ENTRA_TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"

# Context assembly
DEFAULT_TOKEN_BUDGET = 3200
DEFAULT_HEADROOM = 128
CHARS_PER_TOKEN = 4

# Summarization trigger
SUMMARIZE_TOKEN_THRESHOLD = 3000
SUMMARIZE_MESSAGE_THRESHOLD = 60

# Tool stepping
MAX_TOOL_STEPS = 20
FORCED_RESEARCH_LAST_STEP = 4
FORCED_RESEARCH_MIN_TOOL_CALLS = 5

# Prefetch
PREFETCH_MAX_CANDIDATE_SEGMENTS = 6
PREFETCH_MIN_CANDIDATE_SEGMENTS = 2
PREFETCH_LISTING_MAX_PAGES = 5

# Bearer token refresh safety window (seconds)
TOKEN_REFRESH_SKEW_SECONDS = 60
TOKEN_DEFAULT_TTL_SECONDS = 3600
