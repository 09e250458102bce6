# eth_loadgen_core/stats.py
"""
Aggregates per-iteration results into run statistics with pandas.
"""
import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pandas as pd

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    'vu', 'iteration', 'sender', 'nonce', 'outcome', 'gas_price', 'balance', 'tx_hash',
    'failure_kind', 'error', 'receipt_block', 'receipt_status', 'gas_used', 'started_at',
    'duration',
]

# outcomes whose nonce was consumed by an acknowledged transaction
_CONSUMED = ('accepted', 'mined', 'pending')
_FAILURES = ('rejected', 'ambiguous', 'failed')


def results_frame(results: Iterable[Any]) -> pd.DataFrame:
    """One row per IterationResult, outcome as its string value."""
    rows = [r.to_dict() for r in results]
    return pd.DataFrame(rows, columns=RESULT_COLUMNS)


def _counts(series: pd.Series) -> Dict[str, int]:
    return {str(k): int(v) for k, v in series.value_counts().items()}


def summarize(results: Iterable[Any], elapsed_seconds: Optional[float] = None,
              block_headers: Optional[Mapping[int, Mapping[str, int]]] = None) -> Dict[str, Any]:
    """
    Totals, outcome and failure-kind counts, failure rate, nonce range per
    sender, duplicate acknowledged nonces (must be empty), throughput and,
    for mined transactions, per-block results (see block_results).

    :param elapsed_seconds: Run window. Derived from the results' timestamps when omitted.
    :param block_headers: Headers of the blocks the transactions landed in, and their parents.
    """
    frame = results_frame(results)
    total = len(frame)
    summary: Dict[str, Any] = {
        'total_iterations': total,
        'outcomes': {},
        'failure_kinds': {},
        'failure_rate': 0.0,
        'nonce_range': {},
        'duplicate_nonces': {},
        'elapsed_seconds': elapsed_seconds or 0.0,
        'iterations_per_second': 0.0,
        'latency_seconds': {},
        'blocks': [],
        'block_tps': {},
        'gas_utilization': {},
    }
    if total == 0:
        return summary

    summary['outcomes'] = _counts(frame['outcome'])
    summary['failure_kinds'] = _counts(frame['failure_kind'].dropna())
    summary['failure_rate'] = float(frame['outcome'].isin(_FAILURES).sum()) / total

    for sender, nonces in frame.groupby('sender')['nonce']:
        summary['nonce_range'][sender] = {'min': int(nonces.min()), 'max': int(nonces.max())}

    consumed = frame[frame['outcome'].isin(_CONSUMED)]
    duplicated = consumed[consumed.duplicated(subset=['sender', 'nonce'], keep=False)]
    for sender, nonces in duplicated.groupby('sender')['nonce']:
        summary['duplicate_nonces'][sender] = sorted(int(n) for n in nonces.unique())
    if summary['duplicate_nonces']:
        logger.error("Duplicate acknowledged nonces detected: %s", summary['duplicate_nonces'])

    if elapsed_seconds is None:
        elapsed_seconds = float((frame['started_at'] + frame['duration']).max() - frame['started_at'].min())
        summary['elapsed_seconds'] = elapsed_seconds
    if elapsed_seconds > 0:
        summary['iterations_per_second'] = total / elapsed_seconds

    durations = frame['duration'].astype(float)
    summary['latency_seconds'] = {
        'mean': float(durations.mean()),
        'p50': float(durations.quantile(0.50)),
        'p95': float(durations.quantile(0.95)),
        'max': float(durations.max()),
    }
    summary.update(block_results(frame, block_headers))
    return summary


def block_results(frame: pd.DataFrame,
                  block_headers: Optional[Mapping[int, Mapping[str, int]]] = None) -> Dict[str, Any]:
    """
    Per-block view of the mined rows: this run's transactions and gas per
    block, and, where the block and its parent headers are known, block
    time, TPS and gas utilisation of the block.

    :param block_headers: block number -> {'timestamp', 'gas_used', 'gas_limit'}.
    """
    block_headers = block_headers or {}
    mined = frame.dropna(subset=['receipt_block'])
    blocks: List[Dict[str, Any]] = []
    total_txs = 0
    total_time = 0.0
    rates: List[float] = []
    utilisations: List[float] = []

    for number, rows in mined.groupby('receipt_block'):
        number = int(number)
        gas = rows['gas_used'].dropna()
        block: Dict[str, Any] = {
            'number': number,
            'txs': int(len(rows)),
            'gas_used': int(gas.astype('int64').sum()) if len(gas) else None,
            'block_time': None,
            'tps': None,
            'gas_utilization': None,
        }
        header, parent = block_headers.get(number), block_headers.get(number - 1)
        if header is not None and parent is not None:
            block_time = float(abs(header['timestamp'] - parent['timestamp']))
            block['block_time'] = block_time
            if block_time > 0:
                block['tps'] = block['txs'] / block_time
                rates.append(block['tps'])
                total_txs += block['txs']
                total_time += block_time
        if header is not None and header.get('gas_limit'):
            block['gas_utilization'] = header.get('gas_used', 0) / header['gas_limit']
            utilisations.append(block['gas_utilization'])
        blocks.append(block)

    tps: Dict[str, float] = {}
    if rates:
        tps = {'min': min(rates), 'max': max(rates), 'avg': total_txs / total_time}
    utilization: Dict[str, float] = {}
    if utilisations:
        utilization = {'min': min(utilisations), 'max': max(utilisations),
                       'avg': sum(utilisations) / len(utilisations)}
    return {'blocks': blocks, 'block_tps': tps, 'gas_utilization': utilization}


def format_summary(summary: Dict[str, Any]) -> List[str]:
    """Human-readable lines for the end-of-run report."""
    lines = [
        f"Iterations:        {summary['total_iterations']}",
        f"Elapsed:           {summary['elapsed_seconds']:.2f}s",
        f"Throughput:        {summary['iterations_per_second']:.2f} it/s",
        f"Failure rate:      {summary['failure_rate']:.2%}",
    ]
    for outcome, count in sorted(summary['outcomes'].items()):
        lines.append(f"  {outcome:<16} {count}")
    for kind, count in sorted(summary['failure_kinds'].items()):
        lines.append(f"  kind {kind:<11} {count}")
    for sender, nonce_range in summary['nonce_range'].items():
        lines.append(f"Nonces {sender}: {nonce_range['min']}..{nonce_range['max']}")
    if summary.get('blocks'):
        lines.append(f"Mined in {len(summary['blocks'])} block(s)")
    block_tps = summary.get('block_tps')
    if block_tps:
        lines.append(f"Block TPS:         min {block_tps['min']:.2f} max {block_tps['max']:.2f} avg {block_tps['avg']:.2f}")
    return lines


def save_summary_json(summary: Dict[str, Any], path: str) -> None:
    with open(path, 'w') as f:
        json.dump(summary, f, indent=2, default=str)
    logger.info("Summary written to %s", path)
