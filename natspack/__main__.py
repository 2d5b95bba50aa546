from natspack.cli.ctl import app

if __name__ == "__main__":
    app()
