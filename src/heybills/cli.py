"""Command-line interface for Hey Bills."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional
from uuid import uuid4

import typer

from heybills.config import get_settings
from heybills.errors import GenerationError
from heybills.logging_utils import configure_logging
from heybills.models.receipt import ExtractionFailure, ExtractionRequest

app = typer.Typer(help="Hey Bills receipt extraction and chat commands.")


def _services():
    from heybills.server.deps import build_services

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format, [settings.api_token or "", settings.llm_api_key or ""])
    return build_services(settings)


@app.command()
def extract(
    image: Path = typer.Argument(..., exists=True, dir_okay=False, help="Receipt image to scan."),
    user: Optional[str] = typer.Option(None, "--user", help="Store the result for this user id."),
    pretty: bool = typer.Option(True, "--pretty/--no-pretty", help="Pretty-print output JSON."),
) -> None:
    """
    Extract receipt fields from an image file and print the structured result.
    """

    services = _services()
    try:
        request = ExtractionRequest(
            request_id=uuid4().hex,
            image=image.read_bytes(),
            user_id=user,
            filename=image.name,
        )
        result = services.pipeline.extract_receipt(request)
        typer.echo(json.dumps(result.model_dump(mode="json"), indent=2 if pretty else None))
        if isinstance(result, ExtractionFailure):
            raise typer.Exit(code=1)
        if user:
            receipt_id = services.index(user, result)
            typer.echo(f"Stored receipt {receipt_id}.", err=True)
    finally:
        services.close()


@app.command()
def chat(
    message: str = typer.Argument(..., help="Question about your receipts."),
    user: str = typer.Option(..., "--user", help="User id whose receipts are searched."),
    session: Optional[str] = typer.Option(None, "--session", help="Continue an existing session."),
) -> None:
    """Ask the assistant a question grounded in the user's receipts."""

    services = _services()
    session_id = session or uuid4().hex
    try:
        reply = services.chat.chat(session_id, user, message)
    except GenerationError as exc:
        typer.secho(f"{exc.code.value}: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from exc
    except ValueError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    finally:
        services.close()
    typer.echo(reply.reply)
    typer.echo(f"[session {session_id}, {reply.metadata.context_used} receipt(s) used]", err=True)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port."),
) -> None:
    """Run the HTTP API."""

    from heybills.server import run

    run.main(host=host, port=port)


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for `python -m heybills`."""
    app(prog_name="heybills", args=argv)


if __name__ == "__main__":
    main()
