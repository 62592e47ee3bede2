"""
签发访问令牌
为操作员或设备生成 JWT,可选写入一个示例脚本用于首次联调
"""
import argparse
import asyncio

from app.core.security import ROLE_ADMIN, ROLE_DEVICE, ROLE_OPERATOR, create_access_token
from app.infrastructure.database import get_session_factory, init_db
from app.infrastructure.database.repositories import SqlScriptRepository


async def seed_demo_script() -> None:
    """写入示例脚本 (已存在则跳过)"""
    await init_db()

    async with get_session_factory()() as db:
        repository = SqlScriptRepository(db)
        existing = await repository.get_by_code("demo.ping")
        if existing:
            print(f"示例脚本已存在: {existing.id}")
            return

        script = await repository.create_script(code="demo.ping", name="连通性检查", timeout=120, max_retries=2)
        await db.commit()
        print(f"示例脚本创建成功: {script.id}")


def main() -> None:
    parser = argparse.ArgumentParser(description="签发调度服务访问令牌")
    parser.add_argument("subject", help="操作员名称或设备 ID")
    parser.add_argument("--role", choices=[ROLE_OPERATOR, ROLE_ADMIN, ROLE_DEVICE], default=ROLE_OPERATOR)
    parser.add_argument("--seed", action="store_true", help="同时写入示例脚本")
    args = parser.parse_args()

    if args.seed:
        asyncio.run(seed_demo_script())

    print("=" * 50)
    print(f"角色: {args.role}")
    print(f"主体: {args.subject}")
    print(f"令牌: {create_access_token(args.subject, args.role)}")
    print("=" * 50)


if __name__ == "__main__":
    main()
