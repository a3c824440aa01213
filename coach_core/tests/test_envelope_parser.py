import pytest

from coach_core.agents.envelope_parser import encode_envelope, parse_reply
from coach_core.domain.suggestions import (
    CoachingSuggestion,
    CoachingSuggestionEnvelope,
    PlainMessage,
    TimeframeCombination,
    TimeframeCombinationEnvelope,
    TradeManagement,
    TradePlan,
    TradePlanEnvelope,
)


COMBO_REPLY = """```json
{
  "type": "timeframe_combination_suggestion",
  "text": "<p>Select timeframes.</p>",
  "timeframeCombinationDetails": {
    "combinations": [
      {"name": "Swing View", "timeframes": "Daily, 4-Hour, 15-Minute", "description": "Standard.", "isPreferred": true},
      {"name": "Intraday View", "timeframes": "4-Hour, 1-Hour, 5-Minute", "description": "Same day."}
    ]
  }
}
```"""

NON_FINITE_HEAT = (
    '```json\n{"type": "coaching_trade_plan", "tradePlan": {"symbol": "X", "direction": "Long", '
    '"entry": "1", "stopLoss": "0.9", "heat": Infinity}}\n```'
)


def test_plain_text_without_fence():
    assert parse_reply("<p>Chart received.</p>") == PlainMessage("<p>Chart received.</p>")


def test_timeframe_combination_envelope():
    parsed = parse_reply(COMBO_REPLY)
    assert isinstance(parsed, TimeframeCombinationEnvelope)
    assert parsed.kind == "timeframe_combination"
    assert parsed.text == "<p>Select timeframes.</p>"
    swing = parsed.find("Swing View")
    assert swing.is_preferred is True
    assert swing.timeframe_list() == ("Daily", "4-Hour", "15-Minute")


def test_coaching_suggestion_envelope_with_surrounding_prose():
    reply = (
        "Here you go.\n```json\n"
        '{"type": "coaching_suggestion", "text": "Pick one", "coachingSuggestionDetails": ['
        '{"topic": "custom", "text": "Build a plan for EURUSD", "prompt": "Let\'s build a plan for EURUSD."}]}'
        "\n```\nThanks"
    )
    parsed = parse_reply(reply)
    assert isinstance(parsed, CoachingSuggestionEnvelope)
    assert parsed.suggestions[0].prompt == "Let's build a plan for EURUSD."


def test_trade_plan_envelope():
    reply = (
        '```json\n{"type": "coaching_trade_plan", "tradePlan": {"symbol": "EURUSD", "direction": "Long",'
        ' "entry": "1.0850", "stopLoss": "1.0810", "takeProfit1": "1.0920", "heat": 3}}\n```'
    )
    parsed = parse_reply(reply)
    assert isinstance(parsed, TradePlanEnvelope)
    assert parsed.text == "Here is the trade plan based on our analysis:"
    assert parsed.plan.symbol == "EURUSD"
    assert parsed.plan.heat == 3


@pytest.mark.parametrize(
    "reply",
    [
        "```json\n{not json}\n```",
        '```json\n{"type": "settings_suggestion", "text": "x"}\n```',
        '```json\n{"text": "no discriminator"}\n```',
        '```json\n["a", "list"]\n```',
        '```json\n{"type": "timeframe_combination_suggestion", "text": "x", '
        '"timeframeCombinationDetails": {"combinations": []}}\n```',
        '```json\n{"type": "timeframe_combination_suggestion", "text": "x"}\n```',
        '```json\n{"type": "coaching_suggestion", "text": "x", "coachingSuggestionDetails": []}\n```',
        '```json\n{"type": "coaching_trade_plan", "text": "x", "tradePlan": {"symbol": "EURUSD"}}\n```',
        '```json\n{"type": "coaching_trade_plan", "text": "x", "tradePlan": "not an object"}\n```',
    ],
)
def test_degrades_to_entire_original_text(reply):
    assert parse_reply(reply) == PlainMessage(reply)


@pytest.mark.parametrize(
    "reply",
    [
        "",
        "```",
        "```json",
        "```json```",
        "```json\n" + "[" * 5000 + "\n```",
        "\x00\ud800",
        "```python\nprint(1)\n```",
        NON_FINITE_HEAT,
        NON_FINITE_HEAT.replace("Infinity", "1e999"),
        NON_FINITE_HEAT.replace("Infinity", "NaN"),
    ],
)
def test_parser_is_total(reply):
    assert isinstance(parse_reply(reply), PlainMessage)


def test_only_first_fenced_block_is_used():
    reply = COMBO_REPLY + '\n```json\n{"type": "coaching_trade_plan"}\n```'
    assert isinstance(parse_reply(reply), TimeframeCombinationEnvelope)


@pytest.mark.parametrize(
    "envelope",
    [
        TimeframeCombinationEnvelope(
            text="<p>Choose.</p>",
            combinations=(
                TimeframeCombination("Swing View", "Daily, 4-Hour", "Standard.", is_preferred=True),
                TimeframeCombination("Scalp", "5-Minute, 1-Minute"),
            ),
        ),
        CoachingSuggestionEnvelope(
            text="Options",
            suggestions=(CoachingSuggestion("Next topic", "Teach me entries", topic="strategy", navigate_to="academy"),),
        ),
        TradePlanEnvelope(
            text="Plan ready",
            plan=TradePlan(
                symbol="GBPUSD",
                direction="Short",
                entry="1.2700",
                stop_loss="1.2750",
                type="Swing",
                entry_type="Limit Order",
                take_profit_1="1.2600",
                take_profit_2="1.2500",
                heat=4,
                explanation="Bearish order block.",
                trade_management=TradeManagement("After TP1", "50% at TP1", "Rest at TP2"),
            ),
        ),
    ],
)
def test_envelope_round_trip(envelope):
    assert parse_reply(encode_envelope(envelope)) == envelope
