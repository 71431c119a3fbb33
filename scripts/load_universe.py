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
from app.pipeline.storage import SnapshotStore

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Import a ticker CSV as a new universe snapshot.")
    parser.add_argument("csv_path", nargs="?", default=settings.universe_csv)
    parser.add_argument("--as-of", dest="as_of", default=None)
    args = parser.parse_args()
    store = SnapshotStore(settings.db_path)
    snapshot_id = store.import_universe_csv(args.csv_path, as_of=args.as_of)
    if not snapshot_id:
        print('No tickers loaded from', args.csv_path)
        sys.exit(1)
    tickers, _ = store.latest_universe()
    print('Universe snapshot', snapshot_id, '| latest universe size:', len(tickers))
