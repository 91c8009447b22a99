import asyncio
import json
import shutil
from typing import Callable, Optional

import typer
import uvicorn

from face_biometrics.api.client import ServerSuccess
from face_biometrics.app.config import AppConfig, load_config
from face_biometrics.app.errors import FaceBiometricsError, MultipleFacesDetected
from face_biometrics.app.utils import remove_quietly, setup_logging
from face_biometrics.pipeline.face_pipeline import BiometricsPipeline
from face_biometrics.pipeline.frames import CameraFrame
from face_biometrics.pipeline.scanner import LivenessScanner
from face_biometrics.pipeline.verifier import EmbeddingMismatch, NoStoredRecord, VerificationSuccess


app = typer.Typer(name="face-biometrics")


def _pipeline(config: Optional[str]) -> BiometricsPipeline:
    cfg = load_config(config)
    setup_logging(cfg.log_level)
    return BiometricsPipeline(cfg)


@app.command()
def scan(
    enroll: bool = typer.Option(False, help="Enroll the captured face."),
    output: Optional[str] = typer.Option(None, help="Copy the capture to this path."),
    timeout: float = typer.Option(60.0, help="Give up after this many seconds."),
    config: Optional[str] = typer.Option(None, help="YAML config file."),
):
    """Capture a blink-verified selfie from the webcam.

    A capture that cannot be saved or enrolled re-arms the scanner; the webcam
    keeps running until a capture goes through or the timeout passes.
    """
    pipeline = _pipeline(config)

    def accept(path: str) -> None:
        if enroll:
            record = pipeline.enroll(path)
            typer.echo(f"Enrolled {len(record.embedding)}-dim embedding")
        if output:
            shutil.copyfile(path, output)
            typer.echo(f"Saved capture to {output}")

    try:
        asyncio.run(_scan(pipeline, timeout, accept))
    except FaceBiometricsError as e:
        typer.echo(f"Capture failed: {e}", err=True)
        raise typer.Exit(code=1)
    except TimeoutError:
        typer.echo("No blink captured before timeout", err=True)
        raise typer.Exit(code=1)
    finally:
        pipeline.close()


@app.command("enroll")
def enroll_image(
    image: str,
    sign: Optional[bool] = typer.Option(None, "--sign/--no-sign", help="Sign the embedding (needs a signer)."),
    config: Optional[str] = typer.Option(None, help="YAML config file."),
):
    """Enroll the face in IMAGE, replacing any existing enrollment."""
    pipeline = _pipeline(config)
    try:
        record = pipeline.enroll(image, with_signature=sign)
    except FaceBiometricsError as e:
        typer.echo(f"Enrollment failed: {e}", err=True)
        raise typer.Exit(code=1)
    finally:
        pipeline.close()
    typer.echo(f"Enrolled {len(record.embedding)}-dim embedding at {record.saved_at}")


@app.command()
def verify(
    image: str,
    lenient: bool = typer.Option(False, help="Use the lenient threshold (gallery photos)."),
    config: Optional[str] = typer.Option(None, help="YAML config file."),
):
    """Verify the face in IMAGE against the enrollment."""
    pipeline = _pipeline(config)
    try:
        outcome = pipeline.verify(image, lenient=lenient)
    finally:
        pipeline.close()
    if isinstance(outcome, VerificationSuccess):
        typer.echo(f"Verified (similarity {outcome.score:.2f})")
        return
    if isinstance(outcome, NoStoredRecord):
        typer.echo("Nothing enrolled yet", err=True)
    elif isinstance(outcome, EmbeddingMismatch):
        typer.echo(outcome.reason, err=True)
    else:
        typer.echo(f"Verification failed: {outcome.reason}", err=True)
    raise typer.Exit(code=1)


@app.command()
def status(config: Optional[str] = typer.Option(None, help="YAML config file.")):
    """Show the current enrollment."""
    cfg = load_config(config)
    pipeline = BiometricsPipeline(cfg)
    record = pipeline.store.load()
    pipeline.close()
    if record is None:
        typer.echo("Not enrolled")
        return
    summary = record.to_json()
    summary["embedding"] = f"<{len(record.embedding)} values>"
    typer.echo(json.dumps(summary, indent=2))


@app.command()
def clear(config: Optional[str] = typer.Option(None, help="YAML config file.")):
    """Delete the enrollment and its image."""
    pipeline = _pipeline(config)
    pipeline.store.clear()
    pipeline.close()
    typer.echo("Enrollment cleared")


@app.command()
def export(
    image: str,
    url: Optional[str] = typer.Option(None, help="Registration or recovery endpoint."),
    recovery: bool = typer.Option(False, help="Send to export.recovery_url instead of export.api_url."),
    config: Optional[str] = typer.Option(None, help="YAML config file."),
):
    """Extract the embedding from IMAGE and send it to the backend."""
    pipeline = _pipeline(config)
    setting = "recovery_url" if recovery else "api_url"
    target = url or getattr(pipeline.cfg.export, setting)
    if not target:
        pipeline.close()
        typer.echo(f"No URL given and export.{setting} is not configured", err=True)
        raise typer.Exit(code=2)
    try:
        record = pipeline.export.build_export_data(image)
        outcome = pipeline.export.verify_and_upload(target, record)
    except FaceBiometricsError as e:
        typer.echo(f"Export failed: {e}", err=True)
        raise typer.Exit(code=1)
    finally:
        pipeline.close()
    typer.echo(f"{outcome.kind}: {outcome.message}" if outcome.message else outcome.kind)
    if not isinstance(outcome, ServerSuccess):
        raise typer.Exit(code=1)


@app.command()
def api(host: str = "127.0.0.1", port: int = 8000):
    """Run the FastAPI service."""
    uvicorn.run("face_biometrics.api.server:create_app", host=host, port=port, reload=False, factory=True)


async def _scan(pipeline: BiometricsPipeline, timeout: float, accept: Callable[[str], None]) -> None:
    loop = asyncio.get_running_loop()
    results: asyncio.Queue = asyncio.Queue()
    last_status = {"text": None}

    def on_progress(decision):
        if decision.status != last_status["text"]:
            last_status["text"] = decision.status
            typer.echo(decision.status)

    scanner = pipeline.new_scanner(results.put_nowait, results.put_nowait, on_progress)
    cap = _open_camera(pipeline.cfg)
    deadline = loop.time() + timeout
    try:
        while True:
            while not results.empty():
                item = results.get_nowait()
                if isinstance(item, MultipleFacesDetected):
                    raise item
                if isinstance(item, FaceBiometricsError):
                    _rearm(scanner, item)
                    continue
                try:
                    await loop.run_in_executor(None, accept, item)
                except MultipleFacesDetected:
                    raise
                except FaceBiometricsError as e:
                    _rearm(scanner, e)
                    continue
                finally:
                    remove_quietly(item)
                return
            if loop.time() > deadline:
                raise TimeoutError()
            ok, frame = await loop.run_in_executor(None, cap.read)
            if not ok:
                raise FaceBiometricsError("Camera error", "could not read frame")
            scanner.submit(CameraFrame.from_bgr(frame))
            await asyncio.sleep(0)
    finally:
        scanner.stop()
        await scanner.drain()
        cap.release()


def _rearm(scanner: LivenessScanner, error: FaceBiometricsError) -> None:
    typer.echo(f"Capture failed: {error}. Blink again.", err=True)
    scanner.reset()


def _open_camera(cfg: AppConfig):
    import cv2

    cap = cv2.VideoCapture(cfg.camera.device_index)
    cap.set(cv2.CAP_PROP_FRAME_WIDTH, cfg.camera.width)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg.camera.height)
    cap.set(cv2.CAP_PROP_FPS, cfg.camera.fps)
    if not cap.isOpened():
        raise FaceBiometricsError("Camera error", f"cannot open device {cfg.camera.device_index}")
    return cap


if __name__ == "__main__":
    app()
