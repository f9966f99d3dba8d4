# DevBeaver package init
import logging
import os

# Child loggers whose level can be tuned on their own, e.g. DEVBEAVER_LLM_LOG_LEVEL
_COMPONENT_LOGGERS = ("bundle", "llm", "locks", "orchestrator", "publish", "store")


def _level(name: str, default: int) -> int:
    value = (os.getenv(name) or "").upper()
    return getattr(logging, value, default) if value else default


def _configure_logging() -> None:
    root = logging.getLogger("devbeaver")
    base_level = _level("DEVBEAVER_LOG_LEVEL", logging.INFO)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[DEVBEAVER][%(levelname)s] %(name)s: %(message)s"))
        root.addHandler(handler)
    root.setLevel(base_level)

    for component in _COMPONENT_LOGGERS:
        env_name = f"DEVBEAVER_{component.upper()}_LOG_LEVEL"
        logging.getLogger(f"devbeaver.{component}").setLevel(_level(env_name, logging.NOTSET))


_configure_logging()
