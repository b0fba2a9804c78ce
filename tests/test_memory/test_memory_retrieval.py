from agent_runner.config import MemoryConfig
from agent_runner.memory import retrieve_relevant_memories, score_candidate, tokenize
from agent_runner.session import Message


def test_tokenize_lowercases_and_drops_single_chars():
    assert tokenize("A Quick-brown fox, 2 jumps 42x") == ["quick", "brown", "fox", "jumps", "42x"]
    assert tokenize("") == []


def test_score_candidate_damps_by_length():
    short = score_candidate("tea time", ["tea"], 1.0)
    long = score_candidate("tea time with many other words here", ["tea"], 1.0)

    assert short > long > 0
    assert score_candidate("coffee", ["tea"], 2.0) == 0


def test_retrieve_ranks_facts_over_messages():
    results = retrieve_relevant_memories(
        query="where does user live",
        summary="Discussed travel plans.\nUser lives near the coast.",
        facts=["User lives in Split"],
        older_messages=[Message(role="user", content="I live in a small flat")],
        memory_cfg=MemoryConfig(),
    )

    assert results[0] == "User lives in Split"
    assert "User lives near the coast." in results
    assert "Discussed travel plans." not in results


def test_retrieve_empty_query_returns_nothing():
    assert retrieve_relevant_memories("!", "summary", ["fact"], [], MemoryConfig()) == []


def test_retrieve_stops_at_max_results():
    facts = [f"project alpha note {idx}" for idx in range(10)]

    results = retrieve_relevant_memories("alpha", "", facts, [], MemoryConfig(max_results=3))

    assert results == facts[:3]


def test_retrieve_stops_when_token_cap_reached():
    facts = ["alpha " + "x" * 40, "alpha " + "y" * 400, "alpha z"]

    results = retrieve_relevant_memories("alpha", "", facts, [], MemoryConfig(max_tokens=20))

    assert results == [facts[2], facts[0]]


def test_retrieve_clips_long_older_messages():
    older = [Message(role="user", content="budget " + "b" * 500)]

    results = retrieve_relevant_memories("budget", "", [], older, MemoryConfig())

    assert len(results) == 1
    assert results[0].endswith("...")
    assert len(results[0]) == 303


def test_retrieve_only_considers_last_200_older_messages():
    older = [Message(role="user", content="needle")] + [
        Message(role="user", content=f"hay {idx}") for idx in range(200)
    ]

    results = retrieve_relevant_memories("needle", "", [], older, MemoryConfig())

    assert results == []
