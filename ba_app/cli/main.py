"""
Command-line interface for bundle adjustment.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from ba_app.ba.bundle_adjustment import (
    LINEAR_SOLVER_TYPES,
    LOSS_FUNCTIONS,
    METHODS,
    SolverOptions,
    solve_bundle_adjustment,
)
from ba_app.io.problem_io import load_problem_npz, save_problem_npz
from ba_app.viz.plotly_viz import plot_bundle_adjustment


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Refine camera poses, focal lengths and 3D points by bundle adjustment"
    )
    parser.add_argument(
        "--input",
        type=str,
        required=True,
        help="Path to the input problem (.npz written by save_problem_npz)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Path for the refined problem (default: <input>_refined.npz)",
    )
    parser.add_argument(
        "--method",
        type=str,
        default="trf",
        choices=list(METHODS),
        help="Trust-region strategy (default: trf)",
    )
    parser.add_argument(
        "--linear-solver",
        type=str,
        default="sparse_schur",
        choices=list(LINEAR_SOLVER_TYPES),
        help="Linear solver strategy (default: sparse_schur)",
    )
    parser.add_argument(
        "--loss",
        type=str,
        default="linear",
        choices=list(LOSS_FUNCTIONS),
        help="Loss applied to squared residuals (default: linear, plain squared error)",
    )
    parser.add_argument(
        "--loss-scale",
        type=float,
        default=1.0,
        help="Inlier/outlier margin in pixels for robust losses (default: 1.0)",
    )
    parser.add_argument(
        "--max-nfev",
        type=int,
        default=None,
        help="Maximum number of function evaluations (default: solver default)",
    )
    parser.add_argument(
        "--fix-points",
        action="store_true",
        help="Hold all 3D points constant and refine only the cameras",
    )
    parser.add_argument(
        "--verbose",
        type=int,
        default=1,
        choices=[0, 1, 2],
        help="Solver progress reporting: 0 silent, 1 final, 2 per iteration (default: 1)",
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Write an HTML visualization of the initial and refined reconstruction",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main CLI entry point for bundle adjustment.

    Usage:
        ba-solve --input problem.npz --output refined.npz \\
                 --linear-solver sparse_schur --visualize
    """
    args = build_parser().parse_args(argv)

    input_path = Path(args.input)
    output_path = (
        Path(args.output)
        if args.output is not None
        else input_path.with_name(f"{input_path.stem}_refined.npz")
    )

    print(f"[cli] Loading problem from {input_path}...")
    problem = load_problem_npz(str(input_path))

    if args.fix_points:
        for i in range(problem.num_points):
            problem.set_point_constant(i)
        print(f"[cli] Holding {problem.num_points} points constant")

    options = SolverOptions(
        method=args.method,
        linear_solver_type=args.linear_solver,
        loss=args.loss,
        loss_scale=args.loss_scale,
        max_nfev=args.max_nfev,
        verbose=args.verbose,
    )
    summary = solve_bundle_adjustment(problem, options)
    print(summary.full_report())

    output_path.parent.mkdir(parents=True, exist_ok=True)
    print(f"[cli] Saving refined problem to {output_path}...")
    save_problem_npz(str(output_path), problem)

    if args.visualize:
        print("[cli] Generating visualization...")
        initial_problem = load_problem_npz(str(input_path))
        fig = plot_bundle_adjustment(problem, initial_problem)
        viz_path = output_path.with_suffix(".html")
        fig.write_html(str(viz_path))
        print(f"[cli] Visualization saved to {viz_path}")

    print("[cli] Bundle adjustment completed")


if __name__ == "__main__":
    main()
