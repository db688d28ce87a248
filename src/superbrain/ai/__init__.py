"""
AI module - completion provider abstraction.

Providers:
- local: Ollama on this machine (default)
- claude: Anthropic Claude API (opt-in)

The router holds whichever provider the runtime settings select and can swap
it without restarting. Everything works without any provider.
"""
