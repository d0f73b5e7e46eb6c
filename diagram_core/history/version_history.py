"""图表版本历史引擎。

维护一个打开的会话内的图表快照序列，结构为「线性撤销栈 + 重做尾巴」：

- versions: 有序的 DiagramVersion 列表，最多 max_versions 个，超出时从头部 FIFO 淘汰；
- cursor: 当前显示的版本索引，列表为空时为 -1；
- marks: 聊天消息索引 -> 版本索引，记录处理该消息时对应的图表版本。

三者总是在同一次操作中一起更新（_commit），任何时刻 marks 都只指向
versions 中存在的索引。撤销只移动游标；游标不在末尾时创建新版本会丢弃游标之后的版本。

版本创建时 XML 超过 max_xml_size 会被拒绝：状态不变，错误通过
VersionResult.error 返回，而不是抛出。
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from diagram_core.config.settings import settings
from diagram_core.domain.exceptions import DiagramTooLargeError
from diagram_core.domain.models import (
    DiagramVersion,
    DiagramVersionState,
    create_version_id,
    now_ms,
)
from diagram_core.infrastructure.logging.logger import logger


DisplayChart = Callable[[str, bool], Optional[str]]
StateListener = Callable[[DiagramVersionState], None]


def normalize_cursor(cursor: int, length: int) -> int:
    """把游标限制在 [-1, length - 1] 内。"""

    return min(max(cursor, -1), length - 1)


def xml_size(xml: str) -> int:
    return len(xml.encode("utf-8"))


@dataclass
class VersionResult:
    """版本创建操作的结果。

    - xml: 调用方传入的 XML（原样返回）。
    - version_index: 操作后该消息/当前游标对应的版本索引，没有版本时为 -1。
    - created: 是否新建了版本。
    - error: XML 过大时为 DiagramTooLargeError，其余情况为 None。
    """

    xml: str
    version_index: int
    created: bool
    error: Optional[DiagramTooLargeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DiagramVersionHistory:
    """单个会话的图表版本历史控制器（单写者，多读者）。"""

    def __init__(
        self,
        display_chart: Optional[DisplayChart] = None,
        *,
        max_versions: Optional[int] = None,
        max_xml_size: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = create_version_id,
    ):
        self._display_chart = display_chart
        self.max_versions = max_versions or settings.max_versions
        self.max_xml_size = max_xml_size or settings.max_xml_size
        self._clock = clock
        self._id_factory = id_factory
        self._versions: List[DiagramVersion] = []
        self._cursor = -1
        self._marks: Dict[int, int] = {}
        self._listeners: List[StateListener] = []

    # ---- 只读视图 ----

    @property
    def versions(self) -> Tuple[DiagramVersion, ...]:
        return tuple(self._versions)

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def marks(self) -> Dict[int, int]:
        return dict(self._marks)

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return 0 <= self._cursor < len(self._versions) - 1

    @property
    def current_xml(self) -> str:
        if 0 <= self._cursor < len(self._versions):
            return self._versions[self._cursor].xml
        return ""

    def set_display_chart(self, display_chart: Optional[DisplayChart]) -> None:
        self._display_chart = display_chart

    def on_change(self, listener: StateListener) -> Callable[[], None]:
        """注册变更监听器，每次原子变更后收到一份状态快照；返回取消注册函数。"""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---- 批量读写 ----

    def get_state_snapshot(self) -> DiagramVersionState:
        return DiagramVersionState(
            versions=list(self._versions),
            cursor=self._cursor,
            marks=dict(self._marks),
        )

    def restore_state(self, state: DiagramVersionState) -> None:
        """加载会话时整体恢复状态，同时修正越界的游标、超额的版本与失效的标记。"""

        versions = list(state.versions)
        marks = {int(k): int(v) for k, v in state.marks.items()}
        overflow = len(versions) - self.max_versions
        if overflow > 0:
            versions, marks = self._evict(versions, marks, overflow)
        cursor = normalize_cursor(state.cursor - max(overflow, 0), len(versions))
        if versions and cursor < 0:
            cursor = 0
        marks = {k: v for k, v in marks.items() if 0 <= v < len(versions)}
        self._commit(versions, cursor, marks)

    def clear_history(self) -> None:
        self._commit([], -1, {})

    # ---- 版本创建 ----

    def ensure_version_for_message(self, message_index: int, xml: str, note: Optional[str] = None) -> VersionResult:
        """为第 message_index 条消息确保存在对应的图表版本。

        XML 为空或与当前版本相同时不创建新版本，标记指向当前版本（没有版本时不标记）。
        """

        next_xml = str(xml or "")
        error = self._check_size(next_xml)
        if error is not None:
            return VersionResult(xml=next_xml, version_index=self._cursor, created=False, error=error)

        created = bool(next_xml) and next_xml != self.current_xml
        if created:
            versions, marks = self._append_entry(next_xml, note)
            cursor = len(versions) - 1
        else:
            versions, marks, cursor = list(self._versions), dict(self._marks), self._cursor

        if cursor >= 0:
            marks[message_index] = cursor
        self._commit(versions, cursor, marks)
        return VersionResult(xml=next_xml, version_index=cursor, created=created)

    def append_diagram_version(self, xml: str, note: Optional[str] = None) -> VersionResult:
        """追加一个不关联消息的版本，XML 为空或与当前版本相同时不做任何事。"""

        next_xml = str(xml or "")
        if not next_xml or next_xml == self.current_xml:
            return VersionResult(xml=next_xml, version_index=self._cursor, created=False)
        error = self._check_size(next_xml)
        if error is not None:
            return VersionResult(xml=next_xml, version_index=self._cursor, created=False, error=error)

        versions, marks = self._append_entry(next_xml, note)
        self._commit(versions, len(versions) - 1, marks)
        return VersionResult(xml=next_xml, version_index=self._cursor, created=True)

    # ---- 游标移动 ----

    def restore_diagram_version_index(self, index: int) -> bool:
        """显示指定版本并把游标移过去；撤销与重做都走这里。

        渲染组件拒绝该 XML（返回 None）时游标不动，返回 False。
        """

        next_index = normalize_cursor(index, len(self._versions))
        if next_index < 0:
            return False
        entry = self._versions[next_index]
        if self._display_chart is not None:
            if self._display_chart(entry.xml, True) is None:
                logger.warning(f"Renderer rejected diagram version {entry.id}")
                return False
        self._commit(self._versions, next_index, self._marks)
        return True

    def undo_diagram(self) -> bool:
        if not self.can_undo:
            return False
        return self.restore_diagram_version_index(self._cursor - 1)

    def redo_diagram(self) -> bool:
        if not self.can_redo:
            return False
        return self.restore_diagram_version_index(self._cursor + 1)

    def truncate_versions_after_message(self, message_index: int) -> None:
        """重新生成/编辑某条消息时，丢弃该消息对应版本之后的历史。"""

        mark_idx = self._marks.get(message_index)
        if mark_idx is None:
            return
        if 0 <= mark_idx < len(self._versions):
            versions = self._versions[: mark_idx + 1]
        else:
            versions = list(self._versions)
        marks = {
            mi: vi
            for mi, vi in self._marks.items()
            if mi <= message_index and vi <= mark_idx and vi < len(versions)
        }
        cursor = normalize_cursor(min(self._cursor, mark_idx), len(versions))
        self._commit(versions, cursor, marks)

    # ---- 查询 ----

    def get_diagram_xml_for_message(self, message_index: int) -> str:
        idx = self._marks.get(message_index)
        if idx is None or not 0 <= idx < len(self._versions):
            return ""
        return self._versions[idx].xml

    def get_diagram_version_index_for_message(self, message_index: int) -> int:
        return self._marks.get(message_index, -1)

    def get_previous_diagram_xml_before_message(self, before_index: int) -> str:
        """返回严格早于 before_index 的最近一条标记所对应的 XML。"""

        earlier = [mi for mi in self._marks if mi < before_index]
        if not earlier:
            return ""
        idx = self._marks[max(earlier)]
        if not 0 <= idx < len(self._versions):
            return ""
        return self._versions[idx].xml

    # ---- 内部实现 ----

    def _check_size(self, xml: str) -> Optional[DiagramTooLargeError]:
        size = xml_size(xml)
        if size <= self.max_xml_size:
            return None
        logger.warning(
            f"Diagram XML too large: {size} bytes (max {self.max_xml_size})",
            extra={"extra": {"size": size, "limit": self.max_xml_size}},
        )
        return DiagramTooLargeError(size=size, limit=self.max_xml_size)

    def _append_entry(self, xml: str, note: Optional[str]) -> Tuple[List[DiagramVersion], Dict[int, int]]:
        # 丢弃重做尾巴以及指向它的标记
        versions = self._versions[: self._cursor + 1]
        marks = {mi: vi for mi, vi in self._marks.items() if vi < len(versions)}

        overflow = len(versions) + 1 - self.max_versions
        if overflow > 0:
            versions, marks = self._evict(versions, marks, overflow)

        versions.append(DiagramVersion(id=self._id_factory(), created_at=self._clock(), xml=xml, note=note))
        return versions, marks

    @staticmethod
    def _evict(
        versions: List[DiagramVersion], marks: Dict[int, int], count: int
    ) -> Tuple[List[DiagramVersion], Dict[int, int]]:
        remapped = {mi: vi - count for mi, vi in marks.items() if vi >= count}
        return versions[count:], remapped

    def _commit(self, versions: List[DiagramVersion], cursor: int, marks: Dict[int, int]) -> None:
        self._versions = list(versions)
        self._cursor = cursor
        self._marks = dict(marks)
        snapshot = self.get_state_snapshot()
        for listener in list(self._listeners):
            listener(snapshot)
