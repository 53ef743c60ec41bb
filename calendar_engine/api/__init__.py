"""aiohttp HTTP layer for the calendar engine."""
