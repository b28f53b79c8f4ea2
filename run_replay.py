#!/usr/bin/env python3
"""
FusionLab replay driver.

Replays a directory of SQL files against a store through every execution
strategy, prints per-strategy totals and writes a BenchmarkReport.

Usage:
    python run_replay.py --queries queries/ssb --database ssb --out reports/
    python run_replay.py --queries queries/ssb --backend duckdb --database ssb.duckdb
    python run_replay.py --queries queries/ssb --database ssb --query q1_3 --runs 200
    python run_replay.py --queries queries/ssb --database ssb --query q1_3 --explain plan

Password/host may come from FUSIONLAB_PASSWORD / FUSIONLAB_HOST.
"""
import argparse
import logging
import sys
from pathlib import Path

from fusionlab import ConfigurationError, CorrectnessMismatch, FusionLabError, QueryEngine, load_corpus
from fusionlab.config import env_override, from_mapping


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Replay a SQL corpus through all execution strategies")
    ap.add_argument("--queries", required=True, help="Directory of *.sql files (optional <name>.json sidecars)")
    ap.add_argument("--backend", default="mysql", choices=["mysql", "duckdb"])
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=3306)
    ap.add_argument("--user", default="root")
    ap.add_argument("--database", required=True, help="MySQL schema or DuckDB database file")
    ap.add_argument("--pool-size", type=int, default=4)
    ap.add_argument("--timeout", type=float, default=None, help="Per-query timeout in seconds")
    ap.add_argument("--stats", default="reports/routing_stats.json", help="Statistics checkpoint file")
    ap.add_argument("--journal", default=None, help="Resume journal (JSON lines)")
    ap.add_argument("--out", default="reports", help="Output directory for the benchmark report")
    ap.add_argument("--query", default=None, help="Route one case repeatedly instead of replaying")
    ap.add_argument("--runs", type=int, default=1, help="Routed runs for --query")
    ap.add_argument("--explain", default=None, choices=["plan", "analyze"],
                    help="Capture each strategy's EXPLAIN (analyze runs the query again)")
    ap.add_argument("--seed", type=int, default=None)
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = env_override(from_mapping({
            "store": {"backend": args.backend, "host": args.host, "port": args.port,
                      "user": args.user, "database": args.database},
            "engine": {"pool_size": args.pool_size, "default_timeout_s": args.timeout,
                       "statistics_path": args.stats},
            "policy": {"seed": args.seed},
        }))
        cases = load_corpus(Path(args.queries), dialect=config.store.dialect, explain=args.explain)
    except ConfigurationError as e:
        print(f"❌ {e}")
        return 2
    if not cases:
        print(f"❌ No *.sql files in {args.queries}")
        return 2

    print(f"🚀 FusionLab replay: {len(cases)} cases from {args.queries}")
    print(f"   🗄️  Store: {config.store.backend} {config.store.database}")
    print(f"   🔄 Pool: {config.engine.pool_size}")

    out = Path(args.out)
    with QueryEngine(config.store, engine=config.engine, policy=config.policy,
                     comparator=config.comparator) as qe:
        if args.query:
            return route(qe, cases, args.query, args.runs)

        report = qe.replay(cases, journal_path=Path(args.journal) if args.journal else None)
        report_path = report.write(out / "benchmark_report.json")
        qe.recorder.export(out / "execution_telemetry.json")

    print(f"\n{'=' * 60}")
    print("📊 STRATEGY SUMMARY")
    print(f"{'=' * 60}")
    print(report.summary_frame().to_string(index=False))
    for m in report.mismatches:
        print(f"   ⚠️  {m.case_id}: {m.strategy} disagrees with direct ({m.detail})")
    print(f"\n✅ Report written to {report_path}")
    print(f"   verdict digest {report.verdict_digest()[:16]}")
    return 1 if report.mismatches else 0


def route(qe: QueryEngine, cases, case_id: str, runs: int) -> int:
    matching = [c for c in cases if c.case_id == case_id]
    if not matching:
        print(f"❌ Unknown case {case_id}")
        return 2
    spec = matching[0].spec
    for i in range(1, runs + 1):
        try:
            result, trace = qe.run_query(spec)
        except CorrectnessMismatch as e:
            print(f"  [{i}/{runs}] ❌ {e}")
            continue
        except FusionLabError as e:
            print(f"  [{i}/{runs}] ✗ {type(e).__name__}: {e}")
            continue
        d = trace.decision
        print(f"  [{i}/{runs}] {d.phase.value:<9} {result.strategy.value:<8} "
              f"{result.elapsed_ms:8.1f}ms rows={result.row_count}"
              f"{' (degraded)' if result.degraded else ''}")
        for strategy, plan in trace.plans.items():
            print(f"      {strategy} plan:")
            for line in plan.splitlines():
                print(f"        {line}")
    state = qe.stats.get(spec.fingerprint)
    print(f"\n✅ {case_id}: phase={state.phase.value} default={state.default_strategy.value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
