from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from pathlib import Path
from typing import List

from sigcorr.anomaly.engine import AnomalyEngine
from sigcorr.config import load_settings
from sigcorr.correlation.mining import PairMiner
from sigcorr.db import init_db, make_engine
from sigcorr.logging_setup import setup_json_logging
from sqlalchemy.orm import sessionmaker


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Mine correlation rules and scan anomalies for one workspace")
    p.add_argument("--workspace", required=True)
    p.add_argument("--db-url", default=None, help="Overrides SIGCORR_DB_URL")
    p.add_argument("--config", type=Path, default=None, help="YAML settings file")
    p.add_argument("--record", action="store_true", help="Record synthetic velocity incidents")
    p.add_argument("--skip-rules", action="store_true")
    p.add_argument("--skip-anomalies", action="store_true")
    p.add_argument("--out-json", type=Path, default=None)
    args = p.parse_args(argv)

    setup_json_logging()

    settings = load_settings(args.config)
    engine = make_engine(args.db_url) if args.db_url else make_engine()
    init_db(engine)
    db = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        summary = {"workspace": args.workspace, "rules": [], "anomalies": []}
        if not args.skip_rules:
            rules = PairMiner(settings).analyze_correlations(db, args.workspace)
            summary["rules"] = [asdict(r) for r in rules]
        if not args.skip_anomalies:
            anomaly = AnomalyEngine(settings)
            if args.record:
                found = anomaly.detect_and_record_anomalies(db, args.workspace)
            else:
                found = anomaly.detect_workspace_anomalies(db, args.workspace)
            summary["anomalies"] = [asdict(a) for a in found]
    finally:
        db.close()

    text = json.dumps(summary, ensure_ascii=False, indent=2, default=str)
    if args.out_json:
        args.out_json.write_text(text, encoding="utf-8")
        print(f"Wrote {args.out_json} with {len(summary['rules'])} rules and {len(summary['anomalies'])} anomalies")
    else:
        print(text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
