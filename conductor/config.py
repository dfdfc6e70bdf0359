import logging
from pathlib import Path

# 核心路径
ROOT_PATH = Path(__file__).parent.parent

APPDATA_PATH = ROOT_PATH / "AppData"
WORK_PATH = ROOT_PATH / "work-dir"

LOG_PATH = APPDATA_PATH / "logs"
LOG_FILE = LOG_PATH / "conductor.log"

# 日志配置
LOG_LEVEL = logging.INFO
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
# 单个日志文件上限与保留份数
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

# 创建核心路径
for p in [LOG_PATH, WORK_PATH]:
    p.mkdir(parents=True, exist_ok=True)
