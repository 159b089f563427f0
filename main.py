"""
ACME HTTP-01 client — CLI entry point.

Usage:
  python main.py --cert                     # Renew expired certificates once
  python main.py --serv                     # Answer HTTP-01 probes on ACME_HTTP_HOST:ACME_HTTP_PORT
  python main.py --schedule                 # Renew daily at ACME_SCHEDULE_TIME (UTC)
  python main.py --cert --domains a.com b.com
  python main.py --cert --env-file prod.env
"""
from __future__ import annotations

import argparse
import logging
import sys

import structlog

# ── Logging setup ─────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = structlog.get_logger("acme")


# ── Runners ───────────────────────────────────────────────────────────────────


def _log_notifications():
    from issuer.notifications import Notifications

    return Notifications(
        on_init=lambda account: log.info("account ready", url=account.url),
        on_error=lambda err: log.error("client error", error=str(err)),
        on_certificate_error=lambda label, err: log.error(
            "certificate error", label=label, error=str(err)
        ),
        on_certificate_updated=lambda record: log.info(
            "certificate updated", label=record.key, domains=record.domains
        ),
    )


def run_once(settings, domains: list[str] | None = None) -> int:
    """Run one renewal batch and return the process exit code."""
    from issuer.batch import BatchSummary, run_batch
    from issuer.client import Client

    certificates = {domains[0]: domains} if domains else settings.CERTIFICATES
    if not certificates:
        log.error("no certificates configured", hint="set ACME_CERTIFICATES or pass --domains")
        return 1

    client = Client(settings.client_config(_log_notifications()))
    outcomes = run_batch(client, certificates, workers=settings.BATCH_WORKERS)
    summary = BatchSummary.from_outcomes(outcomes)
    log.info(
        "batch finished",
        updated=summary.updated,
        errors=summary.errors,
        skipped=summary.skipped,
    )
    return 1 if summary.errors else 0


def run_server(settings) -> None:
    """Serve HTTP-01 challenges until interrupted."""
    from acmeproto.responder import ChallengeServer
    from certstore.filestore import FileStore

    server = ChallengeServer(
        FileStore(settings.BASE_PATH), host=settings.HTTP_HOST, port=settings.HTTP_PORT
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log.info("challenge server stopped")
    finally:
        server.stop()


def run_scheduled(settings, domains: list[str] | None = None) -> None:
    """Run the renewal batch on a daily schedule."""
    import time

    import schedule

    log.info("scheduling daily certificate check", at=settings.SCHEDULE_TIME)

    def job() -> None:
        try:
            run_once(settings, domains)
        except Exception as exc:
            log.exception("scheduled run failed", error=str(exc))

    schedule.every().day.at(settings.SCHEDULE_TIME).do(job)

    log.info("running initial check immediately")
    job()

    while True:
        schedule.run_pending()
        time.sleep(60)


# ── CLI ───────────────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="ACME HTTP-01 certificate client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --cert
  python main.py --serv
  python main.py --schedule
  python main.py --cert --domains example.com www.example.com
        """,
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--cert", action="store_true", help="Renew expired certificates once and exit")
    mode.add_argument("--serv", action="store_true", help="Start the HTTP-01 challenge server")
    mode.add_argument(
        "--schedule",
        action="store_true",
        help="Renew on the configured daily schedule (ACME_SCHEDULE_TIME)",
    )
    parser.add_argument("--env-file", metavar="PATH", help="Load settings from this .env file")
    parser.add_argument(
        "--domains",
        nargs="+",
        metavar="DOMAIN",
        help="Issue one certificate for these domains instead of ACME_CERTIFICATES",
    )

    args = parser.parse_args(argv)

    from pydantic import ValidationError

    from acmeproto.errors import AcmeClientError
    from config import load_settings

    try:
        settings = load_settings(args.env_file)
        if args.serv:
            run_server(settings)
            return 0
        if args.schedule:
            run_scheduled(settings, args.domains)
            return 0
        return run_once(settings, args.domains)
    except (AcmeClientError, ValidationError) as exc:
        log.error("fatal", error=str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
