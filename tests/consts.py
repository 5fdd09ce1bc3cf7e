from pathlib import Path

THIS_DIR = Path(__file__).parent
PROJECT_DIR = (THIS_DIR / "../").resolve()

TEST_BUCKET_NAME = "test-storage"
TEST_TENANT_BUCKET = "avatars"
TEST_REGION = "us-east-1"

MiB = 1024 * 1024
