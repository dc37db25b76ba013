from __future__ import annotations

import argparse
import json
import logging

from patient_merge.core.settings import load_settings
from patient_merge.db.session import build_session_factory
from patient_merge.services.identity.errors import DataStoreUnavailable
from patient_merge.services.identity.store import PatientStore

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Maintain the list of patient id pairs that must never be merged."
    )
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--add", nargs=2, metavar=("ID_A", "ID_B"), help="Ignore this pair.")
    action.add_argument(
        "--remove", nargs=2, metavar=("ID_A", "ID_B"), help="Stop ignoring this pair."
    )
    action.add_argument("--list", action="store_true", help="Print every ignored pair.")
    parser.add_argument("--note", default=None, help="Reason stored with --add.")
    args = parser.parse_args()

    if args.note and not args.add:
        print("--note is only supported with --add.")
        return 2

    try:
        settings = load_settings()
    except RuntimeError as exc:
        print(str(exc))
        return 2
    logging.basicConfig(level=settings.log_level.strip().upper())

    session = build_session_factory(settings)()
    try:
        store = PatientStore(session, page_size=settings.merge_page_size)
        if args.list:
            pairs = sorted(store.load_ignored_pairs())
            print(json.dumps([list(pair) for pair in pairs], indent=2))
            return 0
        if args.add:
            try:
                added = store.add_ignored_pair(args.add[0], args.add[1], note=args.note)
            except ValueError as exc:
                print(str(exc))
                return 2
            session.commit()
            logger.info(
                "Ignored pair added" if added else "Ignored pair already present",
                extra={"patient_ids": sorted(args.add)},
            )
            print(f"{'added' if added else 'unchanged'}: {' '.join(sorted(args.add))}")
            return 0
        removed = store.remove_ignored_pair(args.remove[0], args.remove[1])
        session.commit()
        print(f"{'removed' if removed else 'not found'}: {' '.join(sorted(args.remove))}")
        return 0
    except DataStoreUnavailable as exc:
        print(f"Fatal: {exc}")
        return 1
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    raise SystemExit(main())
