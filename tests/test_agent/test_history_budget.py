from switchback.budget import HistoryManager, TokenBudget, estimate_message
from switchback.llm import Message, ToolCall


def _text(tokens: int) -> str:
    return "a" * (tokens * 4)


def test_two_entry_transcript_is_untouched():
    manager = HistoryManager(TokenBudget(total_context_window=10, system_reserve=0, response_reserve=0))
    transcript = [Message.system(_text(500)), Message.user(_text(500))]

    assert manager.trim(transcript) == 0
    assert len(transcript) == 2


def test_trim_stops_once_under_budget_and_keeps_latest_turns():
    manager = HistoryManager(TokenBudget(total_context_window=1000, system_reserve=0, response_reserve=0))
    transcript = [Message.system("rules")]
    for i in range(15):
        transcript.append(Message.user(_text(50)))
        transcript.append(Message.assistant(_text(49) + f"{i:04d}"))
    last_user, last_assistant = transcript[-2], transcript[-1]

    removed = manager.trim(transcript)

    assert removed == 10
    assert len(transcript) == 21
    assert manager.history_tokens(transcript) <= 1000
    assert transcript[0].role == "system"
    assert transcript[-2] is last_user
    assert transcript[-1] is last_assistant


def test_trim_never_goes_below_three_entries():
    manager = HistoryManager(TokenBudget(total_context_window=100, system_reserve=0, response_reserve=0))
    transcript = [Message.system("rules")]
    for _ in range(5):
        transcript.append(Message.user(_text(1000)))
        transcript.append(Message.assistant(_text(1000)))
    last_pair = transcript[-2:]

    manager.trim(transcript)

    assert len(transcript) == 3
    assert transcript[0].role == "system"
    assert transcript[1:] == last_pair


def test_trim_drops_tool_result_left_without_its_call():
    manager = HistoryManager(TokenBudget(total_context_window=30, system_reserve=0, response_reserve=0))
    call = ToolCall(id="call_1", name="search", arguments='{"q": "x"}')
    transcript = [
        Message.system("rules"),
        Message.user(_text(100)),
        Message.assistant(None, [call]),
        Message.tool("call_1", "search", _text(10)),
        Message.user(_text(10)),
        Message.assistant(_text(10)),
    ]

    removed = manager.trim(transcript)

    assert removed == 3
    assert [m.role for m in transcript] == ["system", "user", "assistant"]


def test_budget_reserves_are_subtracted():
    budget = TokenBudget()

    assert budget.max_history_tokens == 4096 - 300 - 1500


def test_message_estimate_counts_tool_call_arguments():
    call = ToolCall(id="call_1", name="read_file", arguments='{"path": "notes/today.txt"}')

    assert estimate_message(Message.assistant(None, [call])) > 0
    assert estimate_message(Message.user(_text(10))) == 10
