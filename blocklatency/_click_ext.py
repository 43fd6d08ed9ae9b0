from pathlib import Path

import click
from dotenv import load_dotenv

ALLOWED_ENV_FILES = "Allowed: '.env', '.env.<suffix>' and '<prefix>.env'."


def is_env_file(path: Path) -> bool:
    return path.name == ".env" or path.name.startswith(".env.") or path.name.endswith(".env")


def _suggest_env_files(path: Path) -> list[str]:
    if not (folder := path.parent).is_dir():
        return []

    return sorted(p.name for p in folder.iterdir() if p.is_file() and is_env_file(p))


def env_file_callback(ctx, param, values) -> tuple[Path, ...]:
    """Load every given env file into the environment, later files overriding earlier ones"""
    env_files = []
    for path in map(Path, values or ()):
        if not is_env_file(path):
            if suggestions := _suggest_env_files(path):
                raise click.BadParameter(
                    f"Invalid env file: {path}. Did you mean: {', '.join(suggestions)}?",
                    ctx=ctx,
                    param=param,
                )

            raise click.BadParameter(
                f"Refusing to load non-.env file: {path}. {ALLOWED_ENV_FILES}",
                ctx=ctx,
                param=param,
            )

        load_dotenv(path, override=True)
        env_files.append(path)

    return tuple(env_files)


def session_file_callback(ctx, param, path: Path) -> Path:
    if path.suffix != ".jsonl":
        raise click.BadParameter(f"Expected a '.jsonl' session file, got: {path.name}")

    return path
