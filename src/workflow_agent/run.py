# run.py
# Entry point. Config and wiring only. No logic lives here.
#
# Settings come from the environment (and .env); see config.py.

from workflow_agent import display
from workflow_agent.config import Settings
from workflow_agent.server import create_app


def main() -> None:
    settings = Settings.from_env()
    app = create_app(settings)
    display.server_started(settings.host, settings.port, settings.model, settings.provider_family)
    app.run(host=settings.host, port=settings.port, threaded=True)


if __name__ == "__main__":
    main()
