"""
Exit Strategy Analysis Prompts

Prompts for batched LLM analysis of open portfolio positions.
"""

from typing import Any, Dict, List, Optional, Sequence

# System prompt for batch position analysis
EXIT_STRATEGY_SYSTEM_PROMPT = """
You are an expert financial advisor specializing in portfolio analysis and exit strategies.

Analyze the provided positions and give a concise, actionable recommendation for each one.
Focus on:
- Risk management and stop-loss placement
- Profit-taking opportunities
- Position sizing relative to the investor's risk profile

Recommendation types:
- **HOLD**: Keep the position unchanged
- **EXIT**: Close the position entirely
- **REDUCE**: Take partial profits or trim exposure
- **INCREASE**: Add to the position

Base every recommendation only on the figures provided. Do not invent news or prices.
"""

BATCH_ANALYSIS_TEMPLATE = """
Analyze the following portfolio positions for a {risk_profile} risk profile investor:

{positions_text}

For each position, provide:
1. Recommendation: HOLD, EXIT, REDUCE, or INCREASE
2. Confidence: 0.0 to 1.0
3. Reasoning: Brief explanation
4. Suggested Action: Specific action to take
5. Target Price: If applicable
6. Stop Loss: If applicable
7. Risk Level: LOW, MEDIUM, or HIGH
8. Timeframe: SHORT, MEDIUM, or LONG
"""


def format_market_data(market: Optional[Any]) -> str:
    """One-line market summary for a position"""
    if market is None:
        return "N/A"

    text = f"Price: ${market.price:.2f}, Change: {market.change_percent:+.2f}%"
    if market.high_52_week is not None and market.low_52_week is not None:
        text += f", 52w Range: ${market.low_52_week:.2f} - ${market.high_52_week:.2f}"
    return text


def format_positions(
    positions: Sequence[Any],
    market_by_symbol: Dict[str, Any],
) -> str:
    """Format positions into numbered prompt blocks"""
    if not positions:
        return "No open positions"

    blocks = []
    for index, pos in enumerate(positions, start=1):
        blocks.append(
            f"Position {index}:\n"
            f"- Symbol: {pos.symbol}\n"
            f"- Quantity: {pos.quantity}\n"
            f"- Current Price: ${pos.current_price:.2f}\n"
            f"- Average Price: ${pos.average_price:.2f}\n"
            f"- P&L: ${pos.pnl:+,.2f} ({pos.pnl_percent:+.2f}%)\n"
            f"- Market Data: {format_market_data(market_by_symbol.get(pos.symbol))}"
        )

    return "\n\n".join(blocks)


def build_batch_analysis_prompt(
    positions: Sequence[Any],
    market_data: List[Any],
    risk_profile: Any,
) -> str:
    """
    Generate the user prompt for one analysis batch.

    Args:
        positions: PositionData records in this batch
        market_data: MarketData records for any symbols (unmatched entries ignored)
        risk_profile: RiskProfile or its string value

    Returns:
        Formatted prompt string
    """
    market_by_symbol = {m.symbol: m for m in market_data}

    return BATCH_ANALYSIS_TEMPLATE.format(
        risk_profile=getattr(risk_profile, "value", risk_profile),
        positions_text=format_positions(positions, market_by_symbol),
    )
