"""Entry point for: python3 -m kairos.services.proactive"""
import asyncio
from kairos.services.proactive.service import initialize


def main():
    asyncio.run(initialize().run())


if __name__ == "__main__":
    main()
