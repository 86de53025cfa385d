"""Node handlers package.

One async executor per node type, organized by category:
- triggers.py: every trigger type (pass-through, cron validation)
- ai.py: text generation and agent-attached chat models
- agent.py: AI Agent orchestrating chat model and chat memory providers
- postgres.py, mongodb.py: chat memory
- http.py: HTTP Request
- messaging.py: Slack, Discord, Telegram
- email.py: SMTP / Gmail email
- sheets.py: Google Sheets export
- mcp.py: MCP tool invocation

Every executor is called with keyword arguments
`data, node_id, user_id, context, step, publish` plus whatever services the
node registry binds, and returns the next ExecutionContext.
"""

from .triggers import handle_trigger
from .ai import handle_text_generation, handle_chat_model
from .agent import handle_ai_agent
from .postgres import handle_postgres
from .mongodb import handle_mongodb
from .http import handle_http_request
from .messaging import handle_webhook_message, handle_telegram
from .email import handle_email
from .sheets import handle_google_sheets
from .mcp import handle_mcp_tools

__all__ = [
    'handle_trigger',
    'handle_text_generation',
    'handle_chat_model',
    'handle_ai_agent',
    'handle_postgres',
    'handle_mongodb',
    'handle_http_request',
    'handle_webhook_message',
    'handle_telegram',
    'handle_email',
    'handle_google_sheets',
    'handle_mcp_tools',
]
