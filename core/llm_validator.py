"""
Recommendation Validator for the Trading Dashboard

Guardrails for LLM-generated exit-strategy recommendations:
- Structured output enforcement
- Per-item schema validation and normalization
- Consistency validation (conflicting duplicates, unknown symbols)
- Hallucination mitigation (confidence penalties)

Items that fail validation are dropped; the caller falls back to the
rule-based classifier for any position left without a recommendation.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .data_structures import AIRecommendation, RecommendationType, RiskLevel, Timeframe

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100

# Labels some models use for the same decisions
TYPE_ALIASES = {
    "SELL": RecommendationType.REDUCE,
    "BUY": RecommendationType.INCREASE,
    "BUY_MORE": RecommendationType.INCREASE,
}

# snake_case name -> camelCase name accepted from the model
FIELD_ALIASES = {
    "recommendation_type": "recommendationType",
    "suggested_action": "suggestedAction",
    "target_price": "targetPrice",
    "stop_loss": "stopLoss",
    "risk_level": "riskLevel",
}

HALLUCINATION_PATTERNS = [
    r'breaking news',  # the model has no real-time feed
    r'just announced',
    r'moments ago',
    r'live update',
    r'real-time',
    r'as of \d{1,2}:\d{2}',
]

PRECISE_PATTERNS = [
    r'\$[\d,]+\.\d{4,}',
    r'[\d.]+%\s*exactly',
    r'precisely\s+[\d.]+',
]


@dataclass
class ValidationResult:
    """Result of LLM output validation."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    corrected_output: Optional[Dict] = None
    confidence_adjustment: float = 1.0  # Multiplier for confidence


def _get(item: Dict[str, Any], name: str, default: Any = None) -> Any:
    if name in item:
        return item[name]
    alias = FIELD_ALIASES.get(name)
    if alias and alias in item:
        return item[alias]
    return default


def _parse_type(value: Any) -> Optional[RecommendationType]:
    if not isinstance(value, str):
        return None
    label = value.strip().upper()
    if label in TYPE_ALIASES:
        return TYPE_ALIASES[label]
    try:
        return RecommendationType(label)
    except ValueError:
        return None


class RecommendationValidator:
    """
    Validates and normalizes LLM recommendation batches.

    Accepts either a bare JSON array of recommendations or an object with a
    "recommendations" array, optionally wrapped in a markdown code block.
    """

    def __init__(
        self,
        require_reasoning: bool = True,
        min_reasoning_length: int = 10,
    ):
        self.require_reasoning = require_reasoning
        self.min_reasoning_length = min_reasoning_length

        # Track validation history for pattern detection
        self._validation_history: List[ValidationResult] = []

    def validate(
        self,
        llm_output: str,
        expected_symbols: Optional[Iterable[str]] = None,
    ) -> ValidationResult:
        """
        Validate LLM output against the recommendation schema.

        Args:
            llm_output: Raw LLM output string
            expected_symbols: Symbols that were submitted for analysis

        Returns:
            ValidationResult whose corrected_output holds the accepted items
            as {"recommendations": [...]}
        """
        result = ValidationResult(is_valid=True)
        expected = {s.upper() for s in expected_symbols} if expected_symbols is not None else None

        # Step 1: Parse JSON
        parsed = self._parse_json(llm_output)
        if parsed is None:
            result.is_valid = False
            result.errors.append("Failed to parse JSON from LLM output")
            return self._track(result)

        items = self._extract_items(parsed)
        if items is None:
            result.is_valid = False
            result.errors.append("LLM output must be an array or contain a 'recommendations' array")
            return self._track(result)

        # Step 2: Per-item schema validation
        accepted = []
        for i, item in enumerate(items):
            item_errors = self._validate_item(item, i)
            if item_errors:
                result.warnings.extend(item_errors)
                continue

            symbol = str(item["symbol"]).strip().upper()
            if expected is not None and symbol not in expected:
                result.warnings.append(f"Recommendation[{i}]: Unknown symbol '{symbol}' ignored")
                continue
            accepted.append(item)

        # Step 3: Consistency checks
        consistency_errors = self._check_consistency(accepted)
        result.errors.extend(consistency_errors)

        # Step 4: Hallucination detection
        hallucination_result = self._detect_hallucinations(accepted)
        result.warnings.extend(hallucination_result.warnings)
        result.confidence_adjustment *= hallucination_result.confidence_adjustment

        if not accepted:
            result.errors.append("No valid recommendations in LLM output")

        # Determine final validity
        if result.errors:
            result.is_valid = False
        else:
            result.corrected_output = {"recommendations": accepted}

        return self._track(result)

    def _track(self, result: ValidationResult) -> ValidationResult:
        self._validation_history.append(result)
        if len(self._validation_history) > HISTORY_LIMIT:
            self._validation_history = self._validation_history[-HISTORY_LIMIT:]
        return result

    def _parse_json(self, text: str) -> Optional[Any]:
        """Extract and parse JSON from LLM output."""
        if not isinstance(text, str):
            return None

        # Try direct parsing first
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        # Try to extract JSON from markdown code blocks, then bare arrays/objects
        json_patterns = [
            r'```json\s*([\s\S]*?)\s*```',
            r'```\s*([\s\S]*?)\s*```',
            r'\[[\s\S]*\]',
            r'\{[\s\S]*\}',
        ]

        for pattern in json_patterns:
            matches = re.findall(pattern, text)
            for match in matches:
                try:
                    return json.loads(match)
                except json.JSONDecodeError:
                    continue

        return None

    @staticmethod
    def _extract_items(parsed: Any) -> Optional[List[Any]]:
        if isinstance(parsed, list):
            return parsed
        if isinstance(parsed, dict) and isinstance(parsed.get("recommendations"), list):
            return parsed["recommendations"]
        return None

    def _validate_item(self, item: Any, index: int) -> List[str]:
        """Validate one recommendation object."""
        prefix = f"Recommendation[{index}]"

        if not isinstance(item, dict):
            return [f"{prefix}: Must be an object"]

        errors = []

        symbol = item.get("symbol")
        if not isinstance(symbol, str) or not symbol.strip():
            errors.append(f"{prefix}: Missing required field 'symbol'")

        rec_type = _get(item, "recommendation_type")
        if rec_type is None:
            errors.append(f"{prefix}: Missing required field 'recommendation_type'")
        elif _parse_type(rec_type) is None:
            valid = [t.value for t in RecommendationType]
            errors.append(f"{prefix}: Invalid recommendation_type '{rec_type}', must be one of {valid}")

        # Validate confidence
        if "confidence" not in item:
            errors.append(f"{prefix}: Missing required field 'confidence'")
        else:
            try:
                conf = float(item["confidence"])
                if not 0 <= conf <= 1:
                    errors.append(f"{prefix}: Confidence must be between 0 and 1, got {conf}")
            except (TypeError, ValueError):
                errors.append(f"{prefix}: Confidence must be a number")

        # Validate prices
        for name in ("target_price", "stop_loss"):
            value = _get(item, name)
            if value is None:
                continue
            try:
                if float(value) <= 0:
                    errors.append(f"{prefix}: {name} must be positive")
            except (TypeError, ValueError):
                errors.append(f"{prefix}: {name} must be a number")

        # Validate reasoning
        if self.require_reasoning:
            reasoning = item.get("reasoning") or ""
            if not isinstance(reasoning, str) or len(reasoning) < self.min_reasoning_length:
                errors.append(f"{prefix}: Reasoning too short (min {self.min_reasoning_length} chars)")

        return errors

    def _check_consistency(self, items: List[Dict[str, Any]]) -> List[str]:
        """Check for conflicting recommendations on the same symbol."""
        errors = []
        symbol_types: Dict[str, RecommendationType] = {}

        for item in items:
            symbol = str(item["symbol"]).strip().upper()
            rec_type = _parse_type(_get(item, "recommendation_type"))
            if symbol in symbol_types and symbol_types[symbol] != rec_type:
                errors.append(
                    f"Conflicting recommendations for {symbol}: "
                    f"{symbol_types[symbol].value} and {rec_type.value}"
                )
            symbol_types[symbol] = rec_type

        return errors

    def _detect_hallucinations(self, items: List[Dict[str, Any]]) -> ValidationResult:
        """Detect potential hallucinations in the reasoning text."""
        result = ValidationResult(is_valid=True)

        text = " ".join(str(item.get("reasoning") or "") for item in items)

        for pattern in HALLUCINATION_PATTERNS:
            if re.search(pattern, text, re.IGNORECASE):
                result.warnings.append(f"Potential hallucination detected: '{pattern}' claim")
                result.confidence_adjustment *= 0.7

        for pattern in PRECISE_PATTERNS:
            if re.search(pattern, text, re.IGNORECASE):
                result.warnings.append("Suspiciously precise numbers detected")
                result.confidence_adjustment *= 0.85

        return result

    def parse_recommendations(
        self,
        validated_output: Dict,
        confidence_adjustment: float = 1.0,
    ) -> List[AIRecommendation]:
        """
        Convert validated LLM output to AIRecommendation objects.

        Args:
            validated_output: The corrected_output from ValidationResult
            confidence_adjustment: Multiplier applied to every confidence

        Returns:
            Recommendations with source "llm" and no cache key yet
        """
        recommendations = []

        for item in validated_output.get("recommendations", []):
            rec_type = _parse_type(_get(item, "recommendation_type")) or RecommendationType.HOLD

            try:
                risk_level = RiskLevel(str(_get(item, "risk_level", "MEDIUM")).upper())
            except ValueError:
                risk_level = RiskLevel.MEDIUM

            try:
                timeframe = Timeframe(str(item.get("timeframe", "MEDIUM")).upper())
            except ValueError:
                timeframe = Timeframe.MEDIUM

            confidence = float(item.get("confidence", 0.5)) * confidence_adjustment
            target_price = _get(item, "target_price")
            stop_loss = _get(item, "stop_loss")

            recommendations.append(AIRecommendation(
                symbol=str(item["symbol"]).strip().upper(),
                recommendation_type=rec_type,
                confidence=min(max(confidence, 0.0), 1.0),
                reasoning=item.get("reasoning") or "AI analysis completed",
                suggested_action=_get(item, "suggested_action") or "Monitor position",
                risk_level=risk_level,
                timeframe=timeframe,
                target_price=float(target_price) if target_price is not None else None,
                stop_loss=float(stop_loss) if stop_loss is not None else None,
                source="llm",
            ))

        return recommendations

    def get_validation_stats(self) -> Dict:
        """Get statistics on validation history."""
        if not self._validation_history:
            return {"total": 0, "valid": 0, "invalid": 0, "avg_confidence_adjustment": 1.0}

        valid_count = sum(1 for r in self._validation_history if r.is_valid)
        avg_adjustment = sum(r.confidence_adjustment for r in self._validation_history) / len(self._validation_history)

        return {
            "total": len(self._validation_history),
            "valid": valid_count,
            "invalid": len(self._validation_history) - valid_count,
            "valid_rate": valid_count / len(self._validation_history),
            "avg_confidence_adjustment": avg_adjustment,
        }


def create_structured_prompt(base_prompt: str) -> str:
    """
    Wrap a base prompt with structured output instructions.

    This enforces the JSON recommendation schema from the LLM.
    """
    schema_instruction = """
You MUST respond with valid JSON in the following format:
```json
{
  "recommendations": [
    {
      "symbol": "AAPL",
      "recommendation_type": "HOLD|EXIT|REDUCE|INCREASE",
      "confidence": 0.75,
      "reasoning": "Brief explanation for this recommendation",
      "suggested_action": "Specific action to take",
      "target_price": 150.00,
      "stop_loss": 140.00,
      "risk_level": "LOW|MEDIUM|HIGH",
      "timeframe": "SHORT|MEDIUM|LONG"
    }
  ]
}
```

Important:
- Provide exactly one recommendation per position, using the symbol as given
- recommendation_type must be exactly "HOLD", "EXIT", "REDUCE", or "INCREASE"
- confidence must be a number between 0 and 1
- target_price and stop_loss are optional positive numbers
- Do not include any text outside the JSON block
"""

    return f"{base_prompt}\n\n{schema_instruction}"
