import math
import random
import string
import time


ROUND_SECONDS = 45
ROUND_MS = ROUND_SECONDS * 1000
QUIZ_SIZE = 10
ANSWER_LETTERS = ("A", "B", "C", "D")
ROOM_CODE_LENGTH = 6
_ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


def now_ms() -> int:
    return int(time.time() * 1000)


def round_end_ms(start_ms: int) -> int:
    return int(start_ms) + ROUND_MS


def remaining_seconds(start_ms: int, now: int) -> int:
    """Whole seconds left in the round that started at start_ms.

    Rounded up, so a round with 200ms left still shows 1; never negative.
    """
    remaining_ms = max(0, round_end_ms(start_ms) - now)
    return math.ceil(remaining_ms / 1000)


def seconds_until(end_ms: int, now: int) -> int:
    return math.ceil(max(0, end_ms - now) / 1000)


def elapsed_seconds(remaining: int) -> int:
    return min(ROUND_SECONDS, max(0, ROUND_SECONDS - remaining))


def shuffle_questions(questions, rng=None):
    # Fisher-Yates on a copy; each client gets its own order
    rng = rng or random
    shuffled = list(questions)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def _field(q, name):
    if isinstance(q, dict):
        return q.get(name)
    return getattr(q, name, None)


def tally_score(questions, answers) -> int:
    score = 0
    for q in questions:
        if answers.get(_field(q, "id")) == _field(q, "correct_answer"):
            score += 1
    return score


def letter_for_answer(options, answer):
    """Map the answer text to its A-D letter; None if it isn't one of the options."""
    try:
        idx = list(options).index(answer)
    except ValueError:
        return None
    if idx >= len(ANSWER_LETTERS):
        return None
    return ANSWER_LETTERS[idx]


def leaderboard_key(row):
    # score desc, time asc with unfinished players last, id keeps the order total
    time_taken = _field(row, "time_taken")
    pid = _field(row, "id")
    return (
        -int(_field(row, "score") or 0),
        time_taken is None,
        time_taken if time_taken is not None else 0,
        pid if pid is not None else 0,
    )


def generate_room_code(rng=None) -> str:
    rng = rng or random.SystemRandom()
    return "".join(rng.choice(_ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))
