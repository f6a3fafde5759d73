"""Allow running the CLI directly: python -m mcpworkflow"""
from mcpworkflow.cli.main import cli

if __name__ == "__main__":
    cli()
