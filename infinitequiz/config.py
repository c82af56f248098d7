import os
from dotenv import load_dotenv

load_dotenv()


def _split_origins(raw: str):
    return [o.strip() for o in raw.split(",") if o.strip()]


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./quiz.db")
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", 3000))

    # LLM provider (OpenAI-compatible chat completions)
    GROQ_API_KEY = os.getenv("GROQ_API_KEY", "")
    GROQ_BASE_URL = os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1")
    QUIZ_MODEL = os.getenv("QUIZ_MODEL", "llama-3.1-8b-instant")
    QUIZ_TEMPERATURE = float(os.getenv("QUIZ_TEMPERATURE", 1.0))

    # secret for signing player tokens; override in production
    SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret-change-me")

    NATS_URL = os.getenv("NATS_URL", "")
    ARD_BANK_PATH = os.getenv("ARD_BANK_PATH", "")

    CORS_ORIGINS = _split_origins(os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://127.0.0.1:5173",
    ))


settings = Settings()
