"""
Quiz generation shared by the HTTP route and the serverless handler.

generate_quiz() either samples the bundled ARD question bank or asks an
OpenAI-compatible chat-completions API (Groq by default) for ten questions in
a fixed JSON schema. Every failure is raised as QuizGenerationError; the
transports turn it into the same 500 payload.
"""
import json
import random
import re
from pathlib import Path
from typing import Optional

from openai import OpenAI

from . import game
from .cache import cache_question_bank, get_cached_question_bank
from .config import settings
from .logging_utils import get_logger

logger = get_logger("infinitequiz.quizgen")

ARD_CATEGORY = "ARD"
MIXED = "Mixed"
ERROR_MESSAGE = "Failed to generate quiz"

_DATA_DIR = Path(__file__).resolve().parent / "data"
_CYRILLIC = re.compile(r"[а-яА-ЯөӨүҮёЁ]")
_FENCE = re.compile(r"```(?:json)?\n?")

SYSTEM_PROMPT = """ROLE:
You are InfiniteQuizAI, an engine designed to generate fair, verifiable quiz data for the competitive game INFINITE QUIZ.
Your output must always strictly follow the JSON structure described below with zero deviation.

TASK:
Generate unique quiz questions each time you are called.
All questions must have factual and verifiable answers.
Never include text outside of the JSON. Never change the structure or field order.

OUTPUT FORMAT:
Return a JSON object with this exact structure:
{
  "quiz_id": "unique_quiz_identifier",
  "questions": [ array of 10 question objects ]
}

HARD RULES:
Every question must include:
- "id" (unique identifier, e.g. "q1", "q2")
- "category" (MUST match the requested category)
- "difficulty" (easy / medium / hard)
- "question" (the question text)
- "options" (array of exactly 4 strings)
- "correct_answer" (one of "A", "B", "C", "D")
- "explanation" (brief explanation of the correct answer)

Questions must be 100% factually correct, objective, unambiguous and unique.

CATEGORY RULES:
Available categories:
- English: Science, History, Geography, Technology, Space, Pop Culture, Mathematics
- Mongolian: 'Өв Соёл', 'Спорт', 'Anime', 'eSports', 'Монголын Түүх', 'Поп Соёл', 'Монгол Хоол', 'Шинжлэх ухаан', 'Технологи', 'Математик', 'Ерөнхий мэдлэг'
- For a specific category, ALL 10 questions come from that category and every "category" field equals it exactly.
- A Mongolian category means ALL content (questions, options, explanations) is in Mongolian; an English one means English.
- Only mix categories when the user asks for "Mixed".

DIFFICULTY:
- A specific difficulty (easy, medium or hard) applies to ALL 10 questions and every "difficulty" field.
- Mixed difficulty means 4 easy, 4 medium and 2 hard questions.
easy = basic objective facts; medium = general knowledge; hard = multi-step reasoning or less commonly known facts.

STABILITY:
Never add, remove or reorder fields. Options are plain text (no "A.", "B." prefixes).
Explanations are factual and concise.

FINAL REQUIREMENT:
Output ONLY the JSON, nothing else."""


class QuizGenerationError(Exception):
    """Raised for any failure producing a quiz (provider, parse, validation)."""


def _is_specific(value: Optional[str]) -> bool:
    return bool(value) and value != MIXED


def load_ard_bank() -> list:
    cached = get_cached_question_bank(ARD_CATEGORY)
    if cached is not None:
        return cached
    path = Path(settings.ARD_BANK_PATH) if settings.ARD_BANK_PATH else _DATA_DIR / "ard.json"
    try:
        bank = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise QuizGenerationError(f"Could not load question bank: {exc}") from exc
    if not isinstance(bank, list) or not bank:
        raise QuizGenerationError("Question bank is empty")
    cache_question_bank(ARD_CATEGORY, bank)
    return bank


def ard_quiz(difficulty: Optional[str] = None, rng=None) -> dict:
    rng = rng or random
    bank = list(load_ard_bank())
    rng.shuffle(bank)
    level = difficulty.lower() if _is_specific(difficulty) else "medium"
    questions = []
    for index, item in enumerate(bank[:game.QUIZ_SIZE]):
        try:
            letter = game.letter_for_answer(item["options"], item["answer"])
        except (KeyError, TypeError) as exc:
            raise QuizGenerationError(f"Malformed bank entry: {exc}") from exc
        if letter is None:
            raise QuizGenerationError(f"Bank answer not among options: {item['question']}")
        questions.append({
            "id": f"q{index + 1}",
            "category": ARD_CATEGORY,
            "difficulty": level,
            "question": item["question"],
            "options": item["options"],
            "correct_answer": letter,
            "explanation": f"Зөв хариулт: {item['answer']}",
        })
    logger.info("quiz_generated", extra={"category": ARD_CATEGORY, "difficulty": level, "count": len(questions)})
    return {"quiz_id": f"ard_quiz_{game.now_ms()}", "questions": questions}


def build_user_prompt(category: Optional[str], difficulty: Optional[str], seed: Optional[float] = None) -> str:
    if seed is None:
        seed = game.now_ms() + random.random()
    if _is_specific(category):
        prompt = (
            f"Generate a completely new and unique quiz about {category}. "
            f"IMPORTANT: ALL 10 questions MUST be ONLY about {category}. "
            f"Do not include any other categories. "
            f"Every question's \"category\" field must be \"{category}\". (seed: {seed})"
        )
        if _CYRILLIC.search(category):
            prompt += (
                "\n\nLANGUAGE REQUIREMENT: The category is Mongolian. Therefore, ALL questions, "
                "options, and explanations MUST be in MONGOLIAN."
            )
    else:
        prompt = f"Generate a completely new and unique quiz with mixed categories (seed: {seed})."

    if _is_specific(difficulty):
        prompt += (
            f"\n\nDIFFICULTY REQUIREMENT: ALL 10 questions MUST be {difficulty.upper()} difficulty ONLY. "
            f"Every question's \"difficulty\" field must be \"{difficulty.lower()}\"."
        )
    else:
        prompt += (
            "\n\nDIFFICULTY REQUIREMENT: Use mixed difficulty with the standard distribution "
            "(4 easy, 4 medium, 2 hard questions)."
        )
    return prompt


def strip_code_fences(content: str) -> str:
    if "```" in content:
        return _FENCE.sub("", content).strip()
    return content


def parse_quiz(content: Optional[str]) -> dict:
    if not content:
        raise QuizGenerationError("No content received from AI")
    try:
        quiz = json.loads(strip_code_fences(content))
    except ValueError as exc:
        raise QuizGenerationError(f"AI returned invalid JSON: {exc}") from exc
    questions = quiz.get("questions") if isinstance(quiz, dict) else None
    if not isinstance(questions, list) or not questions:
        raise QuizGenerationError("Invalid quiz structure: questions array is missing or empty")
    return quiz


def make_client() -> OpenAI:
    if not settings.GROQ_API_KEY:
        raise QuizGenerationError("GROQ_API_KEY is not set")
    return OpenAI(api_key=settings.GROQ_API_KEY, base_url=settings.GROQ_BASE_URL)


def ai_quiz(category: Optional[str], difficulty: Optional[str], client=None) -> dict:
    logger.info("quiz_requested", extra={"category": category or MIXED, "difficulty": difficulty or MIXED})
    try:
        client = client or make_client()
        completion = client.chat.completions.create(
            model=settings.QUIZ_MODEL,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(category, difficulty)},
            ],
            temperature=settings.QUIZ_TEMPERATURE,
            response_format={"type": "json_object"},
        )
        content = completion.choices[0].message.content if completion.choices else None
    except QuizGenerationError:
        raise
    except Exception as exc:
        raise QuizGenerationError(str(exc)) from exc
    quiz = parse_quiz(content)
    logger.info("quiz_generated", extra={"category": category or MIXED, "count": len(quiz["questions"])})
    return quiz


def generate_quiz(category: Optional[str], difficulty: Optional[str], *, client=None, rng=None) -> dict:
    """Return {quiz_id, questions} or raise QuizGenerationError. No retries."""
    for name, value in (("category", category), ("difficulty", difficulty)):
        if value is not None and not isinstance(value, str):
            raise QuizGenerationError(f"{name} must be a string")
    if category == ARD_CATEGORY:
        return ard_quiz(difficulty, rng=rng)
    return ai_quiz(category, difficulty, client=client)


def error_payload(exc: Exception) -> dict:
    return {"error": ERROR_MESSAGE, "details": str(exc)}
