#!/usr/bin/env python3
"""
Gradient check of a full NTM memory circuit step.

Builds random heads and a random memory, runs one Circuit forward/backward
and compares every input gradient (keys, control scalars, erase/add vectors,
previous weightings, previous memory) against central differences.

Usage:
    python scripts/check_circuit.py
    python scripts/check_circuit.py --rows 16 --width 6 --heads 2 --seed 3

The defaults are the copy-task sizes (128 x 20, one head), which checks
about 2,800 entries; pass smaller sizes for a quick run.
"""

import argparse
import logging
import sys
from pathlib import Path

import torch

from ntm_memory.config import DTYPE, MEMORY_WIDTH, N_LOCATIONS, NUM_HEADS
from ntm_memory.model.circuit import Circuit
from ntm_memory.model.head import Head, head_unit_size
from ntm_memory.nn.units import Units
from ntm_memory.training.gradcheck import check_gradients
from ntm_memory.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_inputs(rows: int, width: int, num_heads: int, seed: int) -> tuple[dict, Units, list]:
    """
    Create random controller outputs, previous weightings and memory.

    Returns:
        (named inputs for the checker, previous memory, per-head flat outputs)
    """
    generator = torch.Generator().manual_seed(seed)
    memory = Units(torch.randn(rows, width, generator=generator, dtype=DTYPE))

    inputs = {"memory": memory}
    flats = []
    for i in range(num_heads):
        flat = Units(torch.randn(head_unit_size(width), generator=generator, dtype=DTYPE))
        wtm1 = Units(torch.softmax(torch.randn(rows, generator=generator, dtype=DTYPE), dim=0))
        inputs[f"head{i}"] = flat
        inputs[f"wtm1_{i}"] = wtm1
        flats.append((flat, wtm1))
    return inputs, memory, flats


def build_parser() -> argparse.ArgumentParser:
    """Command-line options; sizes default to the copy-task geometry."""
    parser = argparse.ArgumentParser(description="Gradient check of one NTM circuit step")
    parser.add_argument("--rows", type=int, default=N_LOCATIONS, help="Memory locations N")
    parser.add_argument("--width", type=int, default=MEMORY_WIDTH, help="Memory width M")
    parser.add_argument("--heads", type=int, default=NUM_HEADS, help="Number of heads")
    parser.add_argument("--seed", type=int, default=0, help="Random seed")
    parser.add_argument("--log-file", type=Path, default=None, help="Optional log file")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def main() -> int:
    args = build_parser().parse_args()

    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO, log_file=args.log_file)

    inputs, memory, flats = build_inputs(args.rows, args.width, args.heads, args.seed)

    def forward() -> Circuit:
        heads = [Head.from_units(flat, args.width, wtm1) for flat, wtm1 in flats]
        return Circuit(heads, memory)

    def outputs(circuit: Circuit) -> list:
        return [r.top for r in circuit.reads] + [circuit.memory]

    circuit = forward()
    for i, summary in enumerate(circuit.head_summaries()):
        logger.info(
            "head %d: beta=%.3g g=%.3g shift=%.3g gamma=%.3g",
            i, summary["beta"], summary["g"], summary["shift"], summary["gamma"],
        )

    result = check_gradients(forward, inputs, outputs_fn=outputs, seed=args.seed)

    print("\n" + "=" * 60)
    print(f"Circuit gradient check: N={args.rows}, M={args.width}, heads={args.heads}")
    print("=" * 60)
    print(f"  Entries checked: {result.num_checked}")
    print(f"  Max abs error:   {result.max_abs_error:.3e}")
    print(f"  Max rel error:   {result.max_rel_error:.3e}")
    if result.passed:
        print("  [PASSED]")
        return 0

    for failure in result.failures[:20]:
        print(
            f"  [FAILED] {failure.name}{list(failure.index)}: "
            f"analytic={failure.analytic:.6e} numeric={failure.numeric:.6e}"
        )
    return 1


if __name__ == "__main__":
    sys.exit(main())
