from streamrelay.main import app, run

__all__ = ["app"]

# Run the main app
if __name__ == "__main__":
    run()
