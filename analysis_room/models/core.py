"""
Core data models for the expert panel.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ExpertId(str, Enum):
    """Closed set of expert personas. Member order is the canonical turn order."""
    ONTOLOGICAL = 'ontological'
    RENAISSANCE = 'renaissance'
    CRISIS = 'crisis'
    OPERATIONAL = 'operational'


USER_ROLE = 'user'


@dataclass(frozen=True)
class ExpertInfo:
    """Immutable configuration of one expert persona."""
    id: ExpertId
    name: str
    name_he: str
    framework: str
    color: str
    icon: str
    rank: int
    stop_token: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id.value,
            'name': self.name,
            'nameHe': self.name_he,
            'framework': self.framework,
            'color': self.color,
            'icon': self.icon,
            'stopToken': self.stop_token,
        }


@dataclass
class Message:
    """One entry of a conversation transcript. Transcripts are append-only."""
    id: str
    role: str  # 'user' or an ExpertId value
    content: str
    timestamp: str
    is_safety_override: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {'id': self.id, 'role': self.role, 'content': self.content, 'timestamp': self.timestamp}
        if self.is_safety_override:
            data['isSafetyOverride'] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        return cls(id=data['id'],
                   role=data['role'],
                   content=data['content'],
                   timestamp=data['timestamp'],
                   is_safety_override=bool(data.get('isSafetyOverride', False)))


@dataclass
class Conversation:
    """A conversation with its transcript and per-expert voice settings."""
    id: int
    title: str
    messages: List[Message]
    voice_settings: Dict[str, str]
    summarized_count: int  # Watermark: messages already covered by rolling summaries
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'messages': [m.to_dict() for m in self.messages],
            'voiceSettings': self.voice_settings,
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
        }


@dataclass
class EpisodicMemory:
    """A remembered piece of user input with its embedding vector."""
    id: int
    text: str
    vector: List[float]
    category: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'text': self.text, 'category': self.category, 'createdAt': self.created_at.isoformat()}


@dataclass
class RollingSummary:
    """Summary of one contiguous transcript segment."""
    id: int
    summary: str
    topics: List[str]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'summary': self.summary, 'topics': self.topics, 'createdAt': self.created_at.isoformat()}


@dataclass
class UserProfile:
    """Deployment-wide user profile. core_profile is stored encrypted."""
    core_profile: Dict[str, Any] = field(default_factory=dict)
    living_summary: str = ''
    updated_at: Optional[datetime] = None

    @property
    def core_rules(self) -> List[str]:
        return list(self.core_profile.get('core_rules') or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'coreProfile': self.core_profile,
            'livingPromptSummary': self.living_summary,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class AcquiredItem:
    """Ledger entry: an item an expert asserted as acquired."""
    id: int
    item: str
    source: str
    context: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'item': self.item,
            'source': self.source,
            'context': self.context,
            'createdAt': self.created_at.isoformat(),
        }


@dataclass
class ScoutReport:
    """Structured research report injected as ground truth."""
    market_trends: List[str]
    scqa_formulation: Dict[str, str]
    expert_directive: str

    SCQA_FIELDS = ('Situation', 'Complication', 'Question', 'Answer_Hypothesis')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'market_trends': list(self.market_trends),
            'scqa_formulation': dict(self.scqa_formulation),
            'expert_directive': self.expert_directive,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['ScoutReport']:
        """Build a report from parsed JSON, or None if required parts are missing."""
        if not isinstance(data, dict):
            return None
        trends = data.get('market_trends')
        scqa = data.get('scqa_formulation')
        directive = data.get('expert_directive')
        if not isinstance(trends, list) or not trends:
            return None
        if not isinstance(scqa, dict) or not directive:
            return None
        return cls(market_trends=[str(t) for t in trends],
                   scqa_formulation={key: str(scqa.get(key, '')) for key in cls.SCQA_FIELDS},
                   expert_directive=str(directive))


@dataclass
class ScoutLogEntry:
    """Entry of the bounded scout cache."""
    topic: str
    vector: List[float]
    summary: str
    report: ScoutReport
    source: str  # 'live' | 'cached'
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'topic': self.topic,
            'summary': self.summary,
            'source': self.source,
            'trends': self.report.market_trends,
        }


@dataclass
class Turn:
    """One expert's finalized output within a round."""
    character: ExpertId
    text: str
    stop_token: str
    voice_id: str
    pitch: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'character': self.character.value,
            'text': self.text,
            'stopToken': self.stop_token,
            'voice_id': self.voice_id,
            'pitch': self.pitch,
        }


@dataclass
class RouterDecision:
    """Outcome of expert selection for one message."""
    experts: List[ExpertId]
    summary_mode: bool
    safety_triggered: bool = False
    direct_calls: List[ExpertId] = field(default_factory=list)
    override_applied: bool = False
    routing_hits: int = 0  # Keyword hits across all routing rules

    @property
    def primary(self) -> ExpertId:
        return self.experts[0]

    @property
    def clears_history(self) -> bool:
        """Exactly one named expert starts the round without prior context; several do not."""
        return len(self.direct_calls) == 1
