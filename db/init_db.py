import asyncio

from db.database import engine, create_tables

async def main():
    await create_tables(engine)
    await engine.dispose()
    print("SQLite DB ready: tables created")

if __name__ == "__main__":
    asyncio.run(main())
