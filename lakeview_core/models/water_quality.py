"""
WATER-QUALITY THRESHOLD EVALUATION
Pass / fail classification of sample results against the parameter
thresholds of a lake's water-body class.

Evaluation types (after normalization):
- max:   value must be <= max_value (upper bound)
- min:   value must be >= min_value (lower bound)
- range: min_value <= value <= max_value (inclusive)
"""

import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional
import logging

from lakeview_core.config.settings import (
    EVALUATION_SYMBOLS, EVALUATION_UPPER_BOUND, EVALUATION_LOWER_BOUND, EVALUATION_RANGE
)

PASS = 'pass'
FAIL = 'fail'
NOT_APPLICABLE = 'not_applicable'


@dataclass
class Evaluation:
    pass_fail: str
    reason: Optional[str] = None
    threshold_id: Any = None
    evaluated_class_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _num(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class WaterQualityEvaluator:
    """Evaluates sample results against class thresholds"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def normalize_evaluation_type(raw: Any) -> Optional[str]:
        """Map symbols and synonyms ('<=', 'Upper Limit', 'gte', ...) to max / min / range"""
        if raw is None:
            return None
        s = str(raw).strip().lower()
        if s in EVALUATION_SYMBOLS:
            return EVALUATION_SYMBOLS[s]
        key = re.sub(r'[^a-z0-9]', '', s)
        if key in EVALUATION_UPPER_BOUND or s in EVALUATION_UPPER_BOUND:
            return 'max'
        if key in EVALUATION_LOWER_BOUND or s in EVALUATION_LOWER_BOUND:
            return 'min'
        if key in EVALUATION_RANGE or s in EVALUATION_RANGE:
            return 'range'
        return None

    @staticmethod
    def compare(eval_type: str, value: float, min_value: Any = None, max_value: Any = None) -> Optional[bool]:
        """True / False for pass / fail; None when the bound the type needs is missing"""
        lo, hi = _num(min_value), _num(max_value)
        if eval_type == 'max':
            return value <= hi if hi is not None else None
        if eval_type == 'min':
            return value >= lo if lo is not None else None
        if eval_type == 'range':
            return lo <= value <= hi if lo is not None and hi is not None else None
        return None

    @staticmethod
    def resolve_standard(event: Dict[str, Any], standards: Optional[List[Dict[str, Any]]] = None) -> Any:
        """Applied standard of the event, else the current standard, else the newest one"""
        if event.get('applied_standard_id'):
            return event['applied_standard_id']
        if not standards:
            return None
        current = [s for s in standards if s.get('is_current')]
        pool = current or standards
        return max(pool, key=lambda s: s.get('id') or 0).get('id')

    @staticmethod
    def resolve_threshold(thresholds: List[Dict[str, Any]], parameter_id: Any,
                          class_code: str, standard_id: Any = None) -> Optional[Dict[str, Any]]:
        """Threshold for the given standard, else the standard-less one"""
        candidates = [
            t for t in thresholds or []
            if str(t.get('parameter_id')) == str(parameter_id) and t.get('class_code') == class_code
        ]
        if standard_id:
            for t in candidates:
                if str(t.get('standard_id')) == str(standard_id):
                    return t
        for t in candidates:
            if t.get('standard_id') is None:
                return t
        return None

    def _not_applicable(self, result: Dict[str, Any], reason: str,
                        threshold: Optional[Dict[str, Any]] = None) -> Evaluation:
        self.logger.debug(f"Evaluation skipped for result {result.get('id')}: {reason}")
        return Evaluation(
            pass_fail=NOT_APPLICABLE,
            reason=reason,
            threshold_id=threshold.get('id') if threshold else None,
            evaluated_class_code=threshold.get('class_code') if threshold else None,
        )

    def evaluate(self, result: Dict[str, Any], lake_class: Optional[str],
                 thresholds: List[Dict[str, Any]], standard_id: Any = None) -> Evaluation:
        """Classify one sample result"""
        parameter = result.get('parameter') or {}
        parameter_id = result.get('parameter_id') or parameter.get('id')
        if parameter_id is None:
            return self._not_applicable(result, 'missing_event_or_parameter')
        if not lake_class:
            return self._not_applicable(result, 'no_lake_class')

        threshold = self.resolve_threshold(thresholds, parameter_id, lake_class, standard_id)
        if threshold is None:
            return self._not_applicable(result, 'no_threshold')

        eval_type = self.normalize_evaluation_type(parameter.get('evaluation_type'))
        value = _num(result.get('value'))
        if value is None or eval_type is None:
            return self._not_applicable(result, 'no_value_or_eval_type', threshold)

        outcome = self.compare(eval_type, value, threshold.get('min_value'), threshold.get('max_value'))
        if outcome is None:
            return self._not_applicable(result, 'incomplete_threshold', threshold)

        return Evaluation(
            pass_fail=PASS if outcome else FAIL,
            threshold_id=threshold.get('id'),
            evaluated_class_code=lake_class,
        )

    def evaluate_event(self, event: Dict[str, Any], lake_class: Optional[str],
                       thresholds: List[Dict[str, Any]],
                       standards: Optional[List[Dict[str, Any]]] = None) -> List[Evaluation]:
        standard_id = self.resolve_standard(event, standards)
        evaluations = [self.evaluate(r, lake_class, thresholds, standard_id) for r in event.get('results') or []]
        failed = sum(1 for e in evaluations if e.pass_fail == FAIL)
        self.logger.info(f"Event {event.get('id')}: {len(evaluations)} results evaluated, {failed} failing")
        return evaluations

    @staticmethod
    def threshold_class(value: Any, threshold: Optional[Dict[str, Any]]) -> str:
        """'exceed' / 'ok' for cell highlighting; '' without a usable threshold or value"""
        num = _num(value)
        if not threshold or num is None:
            return ''
        lo, hi = _num(threshold.get('min_value')), _num(threshold.get('max_value'))
        if lo is None and hi is None:
            return ''
        fails = (lo is not None and num < lo) or (hi is not None and num > hi)
        return 'exceed' if fails else 'ok'
