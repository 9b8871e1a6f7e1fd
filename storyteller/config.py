import os


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str):
    value = os.environ.get(name)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class Config:
    """Base configuration shared across environments."""

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me")
    WTF_CSRF_TIME_LIMIT = None

    # "local" runs TEXT_GENERATOR_MODEL_PATH through transformers; "openai"
    # talks to OPENAI_MODEL (optionally at OPENAI_BASE_URL).  Mock story
    # responses are used when the selected backend is not configured.
    STORY_BACKEND = os.environ.get("STORY_BACKEND", "local")
    TEXT_GENERATOR_MODEL_PATH = os.environ.get("TEXT_GENERATOR_MODEL_PATH")
    TEXT_GENERATOR_TEMPERATURE = _env_float("TEXT_GENERATOR_TEMPERATURE")
    TEXT_GENERATOR_TOP_P = _env_float("TEXT_GENERATOR_TOP_P")
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL")
    OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL")

    # Keep a run going when the backend fails, writing the error into the story.
    STORY_DEGRADE_BACKEND_ERRORS = _env_flag("STORY_DEGRADE_BACKEND_ERRORS")


class TestConfig(Config):
    TESTING = True
    WTF_CSRF_ENABLED = False
    STORY_BACKEND = "local"
    TEXT_GENERATOR_MODEL_PATH = None
    STORY_DEGRADE_BACKEND_ERRORS = False
