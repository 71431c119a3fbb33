from pathlib import Path
import argparse
import os
import sys

# Ensure repo root is on sys.path and is the working directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(ROOT)

from app.config import settings
from app.errors import SettlementError
from app.logging import setup_logging
from app.services.container import build_container

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Resolve weekly open/close prices for a league week.")
    parser.add_argument("league_id")
    parser.add_argument("week_id")
    args = parser.parse_args()
    setup_logging()
    services = build_container(settings)
    try:
        result = services.settlement.resolve_week(args.league_id, args.week_id)
    except SettlementError as e:
        print('Settlement failed:', e, '| missing:', ','.join(e.missing))
        sys.exit(1)
    print('Run', result['run_id'], '| resolved:', result['resolved_count'], '| missing:', ','.join(result['missing']))
