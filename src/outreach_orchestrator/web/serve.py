"""CLI entrypoint: orchestrator-serve"""

import uvicorn


def main() -> None:
    uvicorn.run(
        "outreach_orchestrator.web.app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )


if __name__ == "__main__":
    main()
