"""子进程执行工具：流式读取输出，支持超时与取消时整组终止"""

import os
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple

from ..utils.logger import setup_logger

logger = setup_logger("subprocess_helper")

# 单路输出保留的最大字符数
MAX_OUTPUT_CHARS = 1_000_000


class StreamReader:
    """通用的子进程输出流读取器"""

    def __init__(self, process: subprocess.Popen):
        """
        初始化流读取器

        Args:
            process: 子进程对象
        """
        self.process = process
        self.output_queue: "queue.Queue[Tuple[str, str]]" = queue.Queue()
        self.threads: List[threading.Thread] = []

    def start_reading(self) -> None:
        """启动异步读取stdout和stderr"""
        for stream, name in ((self.process.stdout, "stdout"), (self.process.stderr, "stderr")):
            if stream:
                thread = threading.Thread(
                    target=self._read_stream,
                    args=(stream, name),
                    daemon=True,
                )
                thread.start()
                self.threads.append(thread)

    def _read_stream(self, stream, stream_name: str) -> None:
        """读取流并放入队列"""
        try:
            for line in iter(stream.readline, ""):
                if line:
                    self.output_queue.put((stream_name, line))
        except Exception as e:
            logger.debug(f"读取 {stream_name} 结束: {e}")
        finally:
            stream.close()

    def get_output(self, timeout: float = 0.1) -> Optional[Tuple[str, str]]:
        """
        获取输出

        Args:
            timeout: 等待超时时间

        Returns:
            (stream_name, line) 或 None
        """
        try:
            return self.output_queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_remaining_output(self) -> List[Tuple[str, str]]:
        """获取队列中剩余的所有输出"""
        output = []
        while not self.output_queue.empty():
            try:
                output.append(self.output_queue.get_nowait())
            except queue.Empty:
                break
        return output

    def join(self, timeout: float = 1.0) -> None:
        for thread in self.threads:
            thread.join(timeout)


@dataclass
class ScriptResult:
    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False
    duration_ms: int = 0


class ScriptRunner(Protocol):
    """脚本执行后端"""

    def run(
        self,
        command: List[str],
        env: Dict[str, str],
        cwd: Optional[str],
        timeout: float,
        cancel_event: threading.Event,
    ) -> ScriptResult: ...


class _Buffer:
    def __init__(self) -> None:
        self.parts: List[str] = []
        self.size = 0

    def append(self, line: str) -> None:
        if self.size >= MAX_OUTPUT_CHARS:
            return
        line = line[: MAX_OUTPUT_CHARS - self.size]
        self.parts.append(line)
        self.size += len(line)

    def text(self) -> str:
        return "".join(self.parts)


def _kill_process_group(process: subprocess.Popen) -> None:
    """终止子进程及其派生的整个进程组"""
    try:
        os.killpg(os.getpgid(process.pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


class SubprocessScriptRunner:
    """基于 subprocess.Popen 的脚本执行器，超时或取消时杀掉整组进程"""

    def __init__(self, poll_interval: float = 0.05):
        self.poll_interval = poll_interval

    def run(
        self,
        command: List[str],
        env: Dict[str, str],
        cwd: Optional[str],
        timeout: float,
        cancel_event: threading.Event,
    ) -> ScriptResult:
        """
        运行命令直到退出、超时或被取消

        Args:
            command: 命令列表
            env: 完整的环境变量（不继承宿主环境）
            cwd: 工作目录
            timeout: 超时（秒）
            cancel_event: 取消信号

        Returns:
            ScriptResult
        """
        start = time.monotonic()
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,  # 行缓冲
            env=env,
            cwd=cwd,
            start_new_session=True,
        )
        reader = StreamReader(process)
        reader.start_reading()

        buffers = {"stdout": _Buffer(), "stderr": _Buffer()}
        timed_out = False
        cancelled = False
        deadline = start + timeout

        while process.poll() is None:
            if cancel_event.is_set():
                cancelled = True
                logger.info(f"脚本被取消，终止进程组 pid={process.pid}")
                _kill_process_group(process)
                break
            if time.monotonic() >= deadline:
                timed_out = True
                logger.warning(f"脚本超时（{timeout:.1f}s），终止进程组 pid={process.pid}")
                _kill_process_group(process)
                break
            output = reader.get_output(timeout=self.poll_interval)
            if output:
                stream_name, line = output
                buffers[stream_name].append(line)

        try:
            exit_code = process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            _kill_process_group(process)
            exit_code = process.wait()

        reader.join()
        for stream_name, line in reader.get_remaining_output():
            buffers[stream_name].append(line)

        return ScriptResult(
            exit_code=exit_code,
            stdout=buffers["stdout"].text(),
            stderr=buffers["stderr"].text(),
            timed_out=timed_out,
            cancelled=cancelled,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
