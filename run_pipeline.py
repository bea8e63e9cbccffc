import argparse
import json

from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run one marketplace search invocation.")
    parser.add_argument("--search-config-id", type=int, default=None,
                        help="process one search config; all active configs when omitted")
    parser.add_argument("--create-tables", action="store_true", help="create missing tables first")
    args = parser.parse_args(argv)

    from listingscout.config import get_settings
    from listingscout.db import Base, SessionLocal, engine
    from listingscout.orchestrator import RunOrchestrator
    from listingscout.utils import set_log_level
    import listingscout.models  # noqa: F401

    settings = get_settings()
    set_log_level(settings.log_level)
    if args.create_tables:
        Base.metadata.create_all(bind=engine)

    result = RunOrchestrator(settings, SessionLocal).run(args.search_config_id)
    print(json.dumps(result.as_dict(), indent=2))
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
