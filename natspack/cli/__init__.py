from natspack.cli.ctl import app, cli_app

__all__ = ["app", "cli_app"]
