from typing import Iterable, Optional

DEFAULT_BOT_KEYWORDS = (
    "bot",
    "crawl",
    "spider",
    "slurp",
    "search",
    "robot",
    "ia_archiver",
    "facebookexternalhit",
    "bingpreview",
    "ask jeeves",
    "yandex",
    "baidu",
    "semrush",
    "ahrefs",
    "pingdom",
    "uptimerobot",
    "pycurl",
    "lwp-trivial",
)


class BotDetector:
    """Case-insensitive keyword match against the User-Agent header."""

    def __init__(self, keywords: Iterable[str] = DEFAULT_BOT_KEYWORDS):
        self.keywords = tuple(keyword.lower() for keyword in keywords)

    def is_bot(self, user_agent: Optional[str]) -> bool:
        if not user_agent:
            return False
        agent = user_agent.lower()
        return any(keyword in agent for keyword in self.keywords)
