"""
JobEX CLI commands

This module provides command-line interface for running extraction jobs.
"""

import asyncio
import json
import logging
from pathlib import Path

import click
import yaml

from jobex.config.jobex_config import JobEXConfig
from jobex.errors import JobEXError
from jobex.jobs.models import DocumentPayload, SubmissionMode
from jobex.jobs.service import ExtractionJobService
from jobex.processors.document_sizer import find_key_sections, prepare_document_text, quick_data_check
from jobex.processors.keyword_extractor import KeywordSectionExtractor

CONTENT_TYPES = {
    '.pdf': 'application/pdf',
    '.txt': 'text/plain',
}


def _load_config(config_path):
    if config_path:
        return JobEXConfig.from_file(config_path)
    return JobEXConfig(load_user_file=True)


def _configure_logging(config, log_level):
    logging.basicConfig(
        level=getattr(logging, log_level or config.get('logging.level', 'INFO')),
        format=config.get('logging.format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )


def _read_document(file_path):
    path = Path(file_path)
    content_type = CONTENT_TYPES.get(path.suffix.lower())
    if content_type is None:
        click.echo(f"❌ Unsupported file type: {path.suffix}", err=True)
        raise click.Abort()
    return DocumentPayload(data=path.read_bytes(), file_name=path.name, content_type=content_type)


@click.group()
def cli():
    """JobEX command-line interface"""
    pass


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--mode', type=click.Choice([m.value for m in SubmissionMode]), default='stream', help='Delivery mode (default: stream)')
@click.option('--owner', 'owner_id', help='Owner identity for the job')
@click.option('--config', 'config_path', type=click.Path(exists=True), help='Path to configuration file')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), help='Logging level')
def run(file_path, mode, owner_id, config_path, log_level):
    """
    Run one extraction job over a local document.

    Examples:

    \b
    # Follow progress and partial results as they arrive
    jobex run lease.pdf --owner user_1

    \b
    # Wait for the final state only
    jobex run lease.txt --mode sync
    """
    config = _load_config(config_path)
    _configure_logging(config, log_level)
    document = _read_document(file_path)

    try:
        asyncio.run(_run_job(config, document, owner_id, SubmissionMode(mode)))
    except JobEXError as e:
        click.echo(f"❌ {e.code}: {e.message}", err=True)
        raise click.Abort()


async def _run_job(config, document, owner_id, mode):
    service = ExtractionJobService(extractor=KeywordSectionExtractor(), config=config)
    try:
        submission = await service.submit(document, owner_id=owner_id, mode=mode)
        click.echo(f"Job {submission.job_id} submitted ({mode.value})")

        if mode == SubmissionMode.STREAM:
            async for frame in submission.frames:
                click.echo(json.dumps(frame, default=str))
            return

        if mode == SubmissionMode.POLL:
            async for _ in service.stream(submission.job_id):
                pass

        status = await service.get_status(submission.job_id, include_result=True)
        click.echo(json.dumps(status, indent=2, default=str))
    finally:
        await service.shutdown()


@cli.command('inspect')
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--budget', type=int, default=None, help='Character budget for sizing (default: from config)')
def inspect_document(file_path, budget):
    """Show content markers, section offsets and sizing for a text document"""
    config = JobEXConfig(load_user_file=True)
    text = Path(file_path).read_text(encoding='utf-8', errors='replace')
    sizing = prepare_document_text(text, budget or config.get('sizing.max_direct_length'))

    click.echo(f"Length: {len(text):,} chars")
    click.echo(f"Sizing: {sizing.method} (truncated: {sizing.was_truncated}, kept {len(sizing.text):,})")
    click.echo("Content markers:")
    for marker, present in quick_data_check(text).items():
        click.echo(f"  {'✓' if present else '✗'} {marker}")
    click.echo("Sections:")
    for section, offset in find_key_sections(text).items():
        click.echo(f"  {section}: {offset}")


@cli.group()
def config():
    """Configuration commands"""
    pass


@config.command('show')
@click.option('--config', 'config_path', type=click.Path(exists=True), help='Path to configuration file')
def show_config(config_path):
    """Print the effective configuration"""
    try:
        effective = _load_config(config_path)
    except JobEXError as e:
        click.echo(f"❌ Invalid configuration: {e.message}", err=True)
        raise click.Abort()
    click.echo(yaml.safe_dump(effective.get_all(), sort_keys=False))


if __name__ == '__main__':
    cli()
