import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `infinitequiz` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_shared_state():
	# Rate limiter, cache and change feed are process globals; isolate tests
	import infinitequiz.main as app_main
	from infinitequiz.cache import get_cache
	from infinitequiz.realtime import get_feed
	app_main._RATE_LIMIT_STORE.clear()
	get_cache().clear()
	get_feed().clear()
	yield
	get_feed().clear()


@pytest.fixture
def sample_questions():
	return [
		{
			"id": f"q{i}",
			"category": "Science",
			"difficulty": "easy",
			"question": f"Question {i}?",
			"options": ["one", "two", "three", "four"],
			"correct_answer": "ABCD"[i % 4],
			"explanation": "",
		}
		for i in range(1, 6)
	]
