"""
Feed Data Store.

Collaborator interfaces consumed by the feed recommender, and an in-process
pandas-backed implementation used for serving and tests.

Collaborators:
- UserDirectory: preferred language, block list, follow graph
- InteractionHistory: recently viewed ids, interaction counts, co-interactions
- ContentIndex: content metadata and per-scope candidate frames

Files read by FeedDataStore.from_directory (all optional, CSV or JSON):
- contents.{csv,json}: content_id, creator_id, title, thumbnail_url,
  language, category, created_at[, view_count, like_count, ...]
- interactions.{csv,json}: user_id, content_id, interaction_type, created_at
- users.{csv,json}: user_id, preferred_language
- follows.{csv,json}: follower_id, followee_id
- blocks.{csv,json}: user_id, target_id

Example:
    >>> from feed_service.recommender.store import FeedDataStore
    >>> store = FeedDataStore.from_directory('data/feed')
    >>> store.get_preferred_language('u1')
    'ko'
"""

from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from abc import ABC, abstractmethod
from pathlib import Path
import logging

import pandas as pd

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

CONTENT_COLUMNS = [
    'content_id', 'creator_id', 'title', 'thumbnail_url',
    'language', 'category', 'created_at',
]
INTERACTION_COLUMNS = ['user_id', 'content_id', 'interaction_type', 'created_at']
USER_COLUMNS = ['user_id', 'preferred_language']
FOLLOW_COLUMNS = ['follower_id', 'followee_id']
BLOCK_COLUMNS = ['user_id', 'target_id']

COUNT_TYPES = ('view', 'like', 'comment', 'save', 'share')


# ============================================================================
# Collaborator Interfaces
# ============================================================================

class UserDirectory(ABC):
    """User/Block service."""

    @abstractmethod
    def is_blocked(self, user_id: str, target_id: str) -> bool:
        ...

    @abstractmethod
    def get_blocked_ids(self, user_id: str) -> Set[str]:
        """Ids (users or contents) blocked by user_id."""

    @abstractmethod
    def get_preferred_language(self, user_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def get_followees(self, user_id: str) -> Set[str]:
        ...


class InteractionHistory(ABC):
    """Interaction history store."""

    @abstractmethod
    def get_recently_viewed(self, user_id: str, window_size: int) -> Set[str]:
        ...

    @abstractmethod
    def get_interaction_counts(self, content_id: str) -> Dict[str, int]:
        ...

    @abstractmethod
    def get_user_interactions(self, user_id: str, limit: int) -> List[Tuple[str, str]]:
        """Most recent (content_id, interaction_type) pairs of a user."""

    @abstractmethod
    def get_users_by_content(self, content_id: str, limit: int) -> List[str]:
        ...


class ContentIndex(ABC):
    """Content metadata store and creation-time/popularity index."""

    @abstractmethod
    def get_content_summary(self, content_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def get_candidates(self, category: Optional[str] = None) -> pd.DataFrame:
        """
        Candidate frame for a scope.

        Columns: content_id, creator_id, language, category, created_at,
        view, like, comment, save, share
        """

    @abstractmethod
    def get_feed_items(
        self,
        user_id: Optional[str],
        content_ids: List[str]
    ) -> List[Dict[str, Any]]:
        """Display metadata plus liked/saved flags, in input order."""


# ============================================================================
# Loading Helpers
# ============================================================================

def _read_table(data_dir: Path, name: str, columns: List[str]) -> pd.DataFrame:
    """Read <name>.csv or <name>.json from data_dir; empty frame if absent."""
    csv_path = data_dir / f"{name}.csv"
    json_path = data_dir / f"{name}.json"

    if csv_path.exists():
        df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
    elif json_path.exists():
        df = pd.read_json(json_path, dtype=False)
    else:
        return pd.DataFrame(columns=columns)

    logger.info(f"Loaded {len(df)} rows from {name}")
    return df


def _clean(value: Any) -> Any:
    """None for missing scalars (None, NaN, NaT)."""
    if value is None or isinstance(value, str):
        return value
    return None if pd.isna(value) else value


def _frame(records: Optional[Iterable[Dict[str, Any]]], columns: List[str]) -> pd.DataFrame:
    df = pd.DataFrame(list(records or []))
    for col in columns:
        if col not in df.columns:
            df[col] = None
    return df


# ============================================================================
# FeedDataStore
# ============================================================================

class FeedDataStore(UserDirectory, InteractionHistory, ContentIndex):
    """
    In-process implementation of all feed collaborators.

    Frames are built once and treated as read-only, so lookups are safe
    from the worker threads the candidate sources run on.

    Example:
        >>> store = FeedDataStore(contents=[{'content_id': 'c1', 'language': 'ko'}])
        >>> store.get_content_summary('c1')['language']
        'ko'
    """

    def __init__(
        self,
        contents: Optional[Iterable[Dict[str, Any]]] = None,
        interactions: Optional[Iterable[Dict[str, Any]]] = None,
        users: Optional[Iterable[Dict[str, Any]]] = None,
        follows: Optional[Iterable[Dict[str, Any]]] = None,
        blocks: Optional[Iterable[Dict[str, Any]]] = None
    ):
        self._init_frames(
            contents=_frame(contents, CONTENT_COLUMNS),
            interactions=_frame(interactions, INTERACTION_COLUMNS),
            users=_frame(users, USER_COLUMNS),
            follows=_frame(follows, FOLLOW_COLUMNS),
            blocks=_frame(blocks, BLOCK_COLUMNS),
        )

    @classmethod
    def from_directory(cls, data_dir: str) -> 'FeedDataStore':
        """
        Load store from a directory of CSV/JSON files.

        A missing directory yields an empty store (empty feeds, no errors).
        """
        path = Path(data_dir)
        store = cls.__new__(cls)

        if not path.exists():
            logger.warning(f"Data directory not found: {path} - running in empty mode")

        store._init_frames(
            contents=_read_table(path, 'contents', CONTENT_COLUMNS),
            interactions=_read_table(path, 'interactions', INTERACTION_COLUMNS),
            users=_read_table(path, 'users', USER_COLUMNS),
            follows=_read_table(path, 'follows', FOLLOW_COLUMNS),
            blocks=_read_table(path, 'blocks', BLOCK_COLUMNS),
        )
        return store

    def _init_frames(
        self,
        contents: pd.DataFrame,
        interactions: pd.DataFrame,
        users: pd.DataFrame,
        follows: pd.DataFrame,
        blocks: pd.DataFrame
    ) -> None:
        for col in CONTENT_COLUMNS:
            if col not in contents.columns:
                contents[col] = None
        for col in INTERACTION_COLUMNS:
            if col not in interactions.columns:
                interactions[col] = None

        contents = contents.copy()
        contents['content_id'] = contents['content_id'].astype(str)
        contents['created_at'] = pd.to_datetime(contents['created_at'], utc=True, errors='coerce')
        contents['category'] = (
            contents['category'].fillna('OTHER').astype(str).str.strip().str.upper().replace('', 'OTHER')
        )

        interactions = interactions.copy()
        interactions['user_id'] = interactions['user_id'].astype(str)
        interactions['content_id'] = interactions['content_id'].astype(str)
        interactions['interaction_type'] = (
            interactions['interaction_type'].fillna('').astype(str).str.lower()
        )
        interactions['created_at'] = pd.to_datetime(
            interactions['created_at'], utc=True, errors='coerce'
        )
        # Newest first; stable so equal timestamps keep file order
        self.interactions = interactions.sort_values(
            'created_at', ascending=False, kind='mergesort', na_position='last'
        ).reset_index(drop=True)

        self.contents = self._attach_counts(contents, self.interactions)
        self._content_by_id: Dict[str, Dict[str, Any]] = {
            row['content_id']: row for row in self.contents.to_dict('records')
        }

        self._preferred_language: Dict[str, str] = {
            str(u): str(lang)
            for u, lang in zip(users.get('user_id', []), users.get('preferred_language', []))
            if lang
        }

        self._followees: Dict[str, Set[str]] = {}
        for follower, followee in zip(follows.get('follower_id', []), follows.get('followee_id', [])):
            self._followees.setdefault(str(follower), set()).add(str(followee))

        self._blocked: Dict[str, Set[str]] = {}
        for user, target in zip(blocks.get('user_id', []), blocks.get('target_id', [])):
            self._blocked.setdefault(str(user), set()).add(str(target))

        logger.info(
            f"FeedDataStore initialized: contents={len(self.contents)}, "
            f"interactions={len(self.interactions)}, users={len(self._preferred_language)}"
        )

    @staticmethod
    def _attach_counts(contents: pd.DataFrame, interactions: pd.DataFrame) -> pd.DataFrame:
        """
        Add view/like/comment/save/share columns.

        Explicit <type>_count columns on the content rows win; otherwise
        counts are aggregated from the interaction log.
        """
        if not interactions.empty:
            aggregated = (
                interactions.groupby(['content_id', 'interaction_type'])
                .size()
                .unstack(fill_value=0)
            )
        else:
            aggregated = pd.DataFrame()

        for kind in COUNT_TYPES:
            explicit = f"{kind}_count"
            if explicit in contents.columns:
                values = pd.to_numeric(contents[explicit], errors='coerce').fillna(0)
            elif kind in aggregated.columns:
                values = contents['content_id'].map(aggregated[kind]).fillna(0)
            else:
                values = pd.Series(0, index=contents.index)
            contents[kind] = values.astype(int)

        return contents

    # ========================================================================
    # UserDirectory
    # ========================================================================

    def is_blocked(self, user_id: str, target_id: str) -> bool:
        return str(target_id) in self._blocked.get(str(user_id), set())

    def get_blocked_ids(self, user_id: str) -> Set[str]:
        return set(self._blocked.get(str(user_id), set()))

    def get_preferred_language(self, user_id: str) -> Optional[str]:
        return self._preferred_language.get(str(user_id))

    def get_followees(self, user_id: str) -> Set[str]:
        return set(self._followees.get(str(user_id), set()))

    # ========================================================================
    # InteractionHistory
    # ========================================================================

    def get_recently_viewed(self, user_id: str, window_size: int) -> Set[str]:
        if window_size <= 0 or self.interactions.empty:
            return set()
        views = self.interactions[
            (self.interactions['user_id'] == str(user_id))
            & (self.interactions['interaction_type'] == 'view')
        ]
        return set(views['content_id'].drop_duplicates().head(window_size))

    def get_interaction_counts(self, content_id: str) -> Dict[str, int]:
        row = self._content_by_id.get(str(content_id))
        if row is None:
            return {kind: 0 for kind in COUNT_TYPES}
        return {kind: int(row.get(kind) or 0) for kind in COUNT_TYPES}

    def get_user_interactions(self, user_id: str, limit: int) -> List[Tuple[str, str]]:
        if self.interactions.empty:
            return []
        rows = self.interactions[
            (self.interactions['user_id'] == str(user_id))
            & (self.interactions['interaction_type'].isin(['like', 'save', 'share', 'comment']))
        ].head(limit)
        return list(zip(rows['content_id'], rows['interaction_type']))

    def get_users_by_content(self, content_id: str, limit: int) -> List[str]:
        if self.interactions.empty:
            return []
        rows = self.interactions[
            (self.interactions['content_id'] == str(content_id))
            & (self.interactions['interaction_type'].isin(['like', 'save', 'share']))
        ]
        return list(rows['user_id'].drop_duplicates().head(limit))

    # ========================================================================
    # ContentIndex
    # ========================================================================

    def get_content_summary(self, content_id: str) -> Optional[Dict[str, Any]]:
        row = self._content_by_id.get(str(content_id))
        if row is None:
            return None
        created_at = row.get('created_at')
        return {
            'content_id': row['content_id'],
            'creator_id': _clean(row.get('creator_id')),
            'title': _clean(row.get('title')),
            'thumbnail_url': _clean(row.get('thumbnail_url')),
            'language': _clean(row.get('language')),
            'category': row.get('category'),
            'created_at': created_at.isoformat() if pd.notna(created_at) else None,
        }

    def get_candidates(self, category: Optional[str] = None) -> pd.DataFrame:
        columns = ['content_id', 'creator_id', 'language', 'category', 'created_at', *COUNT_TYPES]
        frame = self.contents[columns]
        if category:
            frame = frame[frame['category'] == category.upper()]
        return frame

    def get_feed_items(
        self,
        user_id: Optional[str],
        content_ids: List[str]
    ) -> List[Dict[str, Any]]:
        liked: Set[str] = set()
        saved: Set[str] = set()
        if user_id is not None and not self.interactions.empty:
            mine = self.interactions[self.interactions['user_id'] == str(user_id)]
            liked = set(mine.loc[mine['interaction_type'] == 'like', 'content_id'])
            saved = set(mine.loc[mine['interaction_type'] == 'save', 'content_id'])

        items = []
        for cid in content_ids:
            summary = self.get_content_summary(cid)
            if summary is None:
                # Deleted after the batch was composed
                continue
            items.append({
                **summary,
                'interactions': self.get_interaction_counts(cid),
                'is_liked': cid in liked,
                'is_saved': cid in saved,
            })
        return items
