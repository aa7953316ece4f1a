import sys

import uvicorn
from dotenv import load_dotenv
from loguru import logger

from approval_agent_loop.api.server import create_app
from approval_agent_loop.app_config import load_json_config, parse_app_config, resolve_runtime_env
from approval_agent_loop.bootstrap import bootstrap_runtime
from approval_agent_loop.logging_config import setup_logging


def main() -> None:
    load_dotenv()

    app_config = parse_app_config(load_json_config())
    log_descriptions = setup_logging(level=app_config.log_level, consumers=app_config.log_consumers)

    env = resolve_runtime_env(app_config.provider_name)
    if not env.provider_api_key:
        logger.error(f"{env.provider_env_var} environment variable is required.")
        sys.exit(1)
    if not env.brave_api_key:
        logger.warning("BRAVE_API_KEY is not set; approved web searches will report that search is unavailable.")

    runtime = bootstrap_runtime(app_config, env)
    if log_descriptions:
        logger.info(f"Logging: {', '.join(log_descriptions)}")

    try:
        # log_config=None keeps uvicorn from replacing the loguru sinks.
        uvicorn.run(create_app(runtime), host=app_config.host, port=app_config.port, log_config=None)
    finally:
        runtime.memory_store.close()


if __name__ == "__main__":
    main()
