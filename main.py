import click
import logging
import json
import sys

from pdv_worker.errors import PDVWorkerError
from pdv_worker.models import NotificationEvent
from pdv_worker.notifications import NotificationBus, Notifier
from pdv_worker.queue_handler import RedisJobQueue
from pdv_worker.service import IngressService
from pdv_worker.settings import settings
from pdv_worker.worker import PDVWorker, build_record_store


def _load_payload(path):
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def _ingress() -> IngressService:
    return IngressService(RedisJobQueue(), NotificationBus())


def _emit(response):
    click.echo(json.dumps(response, indent=2, default=str))
    if not response.get("ok"):
        sys.exit(1)


@click.group()
def cli():
    """PDV report and delivery worker command line interface."""
    pass


@cli.command()
@click.option('--mode', type=click.Choice(['all', 'email', 'report']), default=None,
              help='Queues to consume (defaults to WORKER_MODE)')
def worker(mode):
    """Start the worker pools consuming the email and report queues."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    click.echo("Starting PDV worker...")
    click.echo(f"Redis URL: {settings.redis_url}")
    click.echo(f"Email queue: {settings.queue_email} (concurrency={settings.email_concurrency})")
    click.echo(f"Report queue: {settings.queue_report} (concurrency={settings.report_concurrency})")

    try:
        worker_instance = PDVWorker.from_settings()
        if mode:
            worker_instance.mode = mode
        worker_instance.start()
    except KeyboardInterrupt:
        click.echo("Worker stopped by user")
    except Exception as e:
        click.echo(f"Worker failed: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--format', type=click.Choice(['json', 'text']), default='text', help='Output format')
def health_check(format):
    """Perform health check and exit with appropriate status code."""
    logging.basicConfig(level=logging.ERROR)

    try:
        worker_instance = PDVWorker.from_settings(require_store=False)
        health_status = worker_instance.check_health()
        overall_healthy = bool(health_status.get("healthy", False))

        if format == 'json':
            click.echo(json.dumps(health_status, indent=2))
        else:
            click.echo("PDV Worker Health Check")
            click.echo("=" * 40)

            click.echo(f"Overall Status: {'✓ HEALTHY' if overall_healthy else '✗ UNHEALTHY'}")

            for check_name, check_data in health_status.get("checks", {}).items():
                status = "✓" if check_data.get("healthy", False) else "✗"
                detail = check_data.get("error") or ", ".join(check_data.get("missing", []))
                click.echo(f"{check_name.upper()}: {status} {detail}")

        sys.exit(0 if overall_healthy else 1)

    except Exception as e:
        if format == 'json':
            click.echo(json.dumps({
                "healthy": False,
                "error": str(e)
            }, indent=2))
        else:
            click.echo(f"Health check failed: {e}")

        sys.exit(1)


@cli.command()
@click.option('--payload', required=True, type=click.Path(exists=True), help='Path to report job JSON')
def enqueue_report(payload):
    """Enqueue a report generation job."""
    _emit(_ingress().submit_report(_load_payload(payload)))


@cli.command()
@click.option('--payload', required=True, type=click.Path(exists=True), help='Path to email job JSON')
@click.option('--delay-ms', type=int, default=None, help='Delivery delay (defaults to DELIVERY_DELAY_MS)')
def enqueue_email(payload, delay_ms):
    """Enqueue an email delivery job."""
    _emit(_ingress().add_mailing_job(_load_payload(payload), delay_ms=delay_ms))


@cli.command()
@click.option('--job-id', required=True, help='Email job identifier')
@click.option('--payload', required=True, type=click.Path(exists=True), help='Path to JSON with the new message fields')
def update_email_job(job_id, payload):
    """Replace the message of an email job that has not been sent yet."""
    body = _load_payload(payload)
    body["jobId"] = job_id
    _emit(_ingress().update_mailing_job(body))


@cli.command()
@click.option('--queue', 'queue_name', default=None, help='Queue name (defaults to the email queue)')
@click.option('--job-id', required=True, help='Job identifier')
def job_status(queue_name, job_id):
    """Show the state of a queued job."""
    _emit(_ingress().job_status(queue_name or settings.queue_email, job_id))


@cli.command()
@click.option('--payload', required=True, type=click.Path(exists=True), help='Path to notification JSON')
def relay_notification(payload):
    """
    Record a notification for a tenant.

    Live stream listeners only exist inside a serving process, so from the
    command line the notification is stored for later retrieval.
    """
    logging.basicConfig(level=logging.WARNING)
    try:
        event = NotificationEvent.model_validate(_load_payload(payload))
    except ValueError as e:
        _emit({"ok": False, "error": str(e)})
        return
    try:
        store = build_record_store()
    except PDVWorkerError as e:
        _emit({"ok": False, "error": str(e)})
        return
    Notifier(NotificationBus(), store).notify(event)
    _emit({"ok": True})


if __name__ == '__main__':
    cli()
