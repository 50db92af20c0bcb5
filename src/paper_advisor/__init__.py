__all__ = [
    "settings",
    "db",
    "market_data",
    "news",
    "discovery",
    "opportunities",
    "verdicts",
    "recommendations",
    "risk",
    "execution",
    "monitor",
    "auto_executor",
    "desk",
    "service",
    "scheduler",
    "api",
    "cli",
]
