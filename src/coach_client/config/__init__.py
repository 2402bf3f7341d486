from .settings import CoachClientConfig, load_config, setup_logging, create_example_env_file

__all__ = ["CoachClientConfig", "load_config", "setup_logging", "create_example_env_file"]
