import asyncio

from claims_resolver.service import main

if __name__ == "__main__":
    asyncio.run(main())
