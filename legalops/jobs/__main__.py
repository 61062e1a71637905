"""Run one daily compliance tick"""
import asyncio

from legalops.jobs.daily import main

if __name__ == "__main__":
    asyncio.run(main())
