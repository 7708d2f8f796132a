import argparse
import asyncio
import logging
import shutil

from backup_service import export_to_file, import_from_file
from client import CloudSyncClient
from config import YamlConfig, configure_cloud, load_settings
from db import Database
from repository import Repository


async def _with_repository(db_path: str, action):
    repo = Repository(Database(db_path))
    await repo.init_once()
    try:
        return await action(repo)
    finally:
        await repo.close()


def migrate_db(db_path: str) -> int:
    async def run() -> int:
        database = Database(db_path)
        try:
            return await database.open()
        finally:
            await database.close()

    return asyncio.run(run())


def seed_db(db_path: str) -> None:
    """Open, migrate and re-seed the database, repairing derived statistics."""
    asyncio.run(_with_repository(db_path, lambda repo: repo.recalculate_all()))


def export_data(db_path: str, out_path: str) -> None:
    asyncio.run(_with_repository(db_path, lambda repo: export_to_file(repo, out_path)))


def import_data(db_path: str, in_path: str) -> None:
    asyncio.run(_with_repository(db_path, lambda repo: import_from_file(repo, in_path)))


def backup_db(db_path: str, backup_path: str) -> None:
    shutil.copy(db_path, backup_path)


def restore_db(backup_path: str, db_path: str) -> None:
    shutil.copy(backup_path, db_path)


def _cloud_client(settings) -> CloudSyncClient:
    return CloudSyncClient(
        settings.cloud_database_url,
        settings.cloud_user_id,
        settings.cloud_token,
        timeout=settings.request_timeout,
    )


def push(db_path: str, settings) -> None:
    client = _cloud_client(settings)
    asyncio.run(_with_repository(db_path, client.push))


def pull(db_path: str, settings) -> bool:
    client = _cloud_client(settings)
    return asyncio.run(_with_repository(db_path, client.pull))


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Workout Buddy data tools")
    parser.add_argument("--settings", default="settings.yaml")
    parser.add_argument("--db", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("migrate")
    sub.add_parser("seed")

    exp = sub.add_parser("export")
    exp.add_argument("--out", default="workout-buddy-backup.json")

    imp = sub.add_parser("import")
    imp.add_argument("--in", dest="src", required=True)

    bkp = sub.add_parser("backup")
    bkp.add_argument("--out", default="backup.db")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="backup.db")

    cfg = sub.add_parser("configure")
    cfg.add_argument("--url")
    cfg.add_argument("--user")
    cfg.add_argument("--token")

    sub.add_parser("logout")
    sub.add_parser("push")
    sub.add_parser("pull")

    args = parser.parse_args(argv)
    if args.cmd == "configure":
        configure_cloud(args.settings, args.url, args.user, args.token)
        print(f"Saved cloud settings to {args.settings}")
        return
    if args.cmd == "logout":
        YamlConfig(args.settings).forget_secrets()
        print("Cloud credentials removed")
        return

    settings = load_settings(args.settings)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db_path = args.db or settings.db_path

    if args.cmd == "migrate":
        print(f"Schema version {migrate_db(db_path)}")
    elif args.cmd == "seed":
        seed_db(db_path)
        print("Repair complete")
    elif args.cmd == "export":
        export_data(db_path, args.out)
        print(f"Exported to {args.out}")
    elif args.cmd == "import":
        import_data(db_path, args.src)
        print("Import successful")
    elif args.cmd == "backup":
        backup_db(db_path, args.out)
    elif args.cmd == "restore":
        restore_db(args.src, db_path)
    elif args.cmd == "push":
        push(db_path, settings)
        print("Upload complete")
    elif args.cmd == "pull":
        if pull(db_path, settings):
            print("Download complete")
        else:
            print("No cloud data found")


if __name__ == "__main__":
    main()
