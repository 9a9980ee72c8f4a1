"""Public veterinarian directory: listing, search, live location and map view."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from .. import models, schemas
from ..errors import NotFoundError
from .presence import OnlineVet, VetPresenceTracker

SELECTED_MARKER_COLOR = "#16a34a"
MARKER_COLOR = "#3b82f6"
FIT_BOUNDS_PADDING = 50
SINGLE_VET_ZOOM = 14

Location = Tuple[float, float]


def resolve_location(profile: models.Profile, online: Optional[OnlineVet]) -> Optional[Location]:
    """Live coordinates from presence win over the ones saved on the profile."""

    if online is not None and online.latitude is not None and online.longitude is not None:
        return online.latitude, online.longitude
    if profile.latitude is not None and profile.longitude is not None:
        return profile.latitude, profile.longitude
    return None


def filter_vets(vets: Iterable[schemas.VetPublic], query: str) -> List[schemas.VetPublic]:
    query = (query or "").strip().lower()
    vets = list(vets)
    if not query:
        return vets
    return [
        vet
        for vet in vets
        if query in vet.full_name.lower()
        or query in (vet.location or "").lower()
        or query in (vet.specialization or "").lower()
    ]


def sort_vets(vets: Iterable[schemas.VetPublic]) -> List[schemas.VetPublic]:
    return sorted(vets, key=lambda vet: (not vet.is_online, vet.full_name.casefold()))


def map_view(vets: Sequence[schemas.VetPublic], selected_id: str | None = None) -> schemas.MapView:
    markers = [
        schemas.MapMarker(
            vet_id=vet.id,
            user_id=vet.user_id,
            title=vet.full_name,
            lat=vet.latitude,
            lng=vet.longitude,
            color=SELECTED_MARKER_COLOR if vet.id == selected_id else MARKER_COLOR,
            is_online=vet.is_online,
        )
        for vet in vets
        if vet.latitude is not None and vet.longitude is not None
    ]

    if len(markers) > 1:
        lats = [m.lat for m in markers]
        lngs = [m.lng for m in markers]
        bounds = {"north": max(lats), "south": min(lats), "east": max(lngs), "west": min(lngs)}
        viewport = schemas.MapViewport(
            mode="fit_bounds",
            bounds=bounds,
            center={"lat": (bounds["north"] + bounds["south"]) / 2, "lng": (bounds["east"] + bounds["west"]) / 2},
            padding=FIT_BOUNDS_PADDING,
        )
    elif len(markers) == 1:
        viewport = schemas.MapViewport(
            mode="center", center={"lat": markers[0].lat, "lng": markers[0].lng}, zoom=SINGLE_VET_ZOOM
        )
    else:
        viewport = schemas.MapViewport(mode="none")
    return schemas.MapView(markers=markers, viewport=viewport)


@dataclass
class MarkerChanges:
    added: List[str] = field(default_factory=list)
    moved: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


def reconcile_markers(
    previous: Iterable[schemas.MapMarker], current: Iterable[schemas.MapMarker]
) -> MarkerChanges:
    """Diff two marker sets by vet id so a map only touches what changed."""

    before: Dict[str, schemas.MapMarker] = {m.vet_id: m for m in previous}
    after: Dict[str, schemas.MapMarker] = {m.vet_id: m for m in current}
    changes = MarkerChanges()
    for vet_id, marker in after.items():
        old = before.get(vet_id)
        if old is None:
            changes.added.append(vet_id)
        elif (old.lat, old.lng) != (marker.lat, marker.lng):
            changes.moved.append(vet_id)
    changes.removed = [vet_id for vet_id in before if vet_id not in after]
    return changes


class VetDirectory:
    def __init__(self, tracker: VetPresenceTracker) -> None:
        self.tracker = tracker

    def to_public(self, profile: models.Profile) -> schemas.VetPublic:
        online = self.tracker.get_online_vet_data(profile.user_id)
        location = resolve_location(profile, online)
        return schemas.VetPublic(
            id=profile.id,
            user_id=profile.user_id,
            full_name=profile.full_name,
            location=profile.location,
            bio=profile.bio,
            specialization=profile.specialization,
            profile_image_url=profile.profile_image_url,
            latitude=location[0] if location else None,
            longitude=location[1] if location else None,
            is_available=profile.is_available,
            is_online=online is not None,
            online_at=online.online_at if online else None,
        )

    def list_vets(self, db: Session, query: str | None = None) -> List[schemas.VetPublic]:
        profiles = (
            db.query(models.Profile)
            .filter(models.Profile.role == models.UserRole.VETERINARIAN.value)
            .all()
        )
        vets = [self.to_public(profile) for profile in profiles]
        return sort_vets(filter_vets(vets, query or ""))

    def map(self, db: Session, query: str | None = None, selected_id: str | None = None) -> schemas.MapView:
        return map_view(self.list_vets(db, query), selected_id)

    def sync_map(self, db: Session, request: schemas.MapSyncRequest) -> schemas.MapSync:
        """Current map view plus the marker changes since the client's last render."""

        view = self.map(db, request.q, request.selected)
        changes = reconcile_markers(request.markers, view.markers)
        return schemas.MapSync(view=view, added=changes.added, moved=changes.moved, removed=changes.removed)

    def get_vet(self, db: Session, user_id: str) -> schemas.VetProfileDetail:
        profile = (
            db.query(models.Profile)
            .filter(
                models.Profile.user_id == user_id,
                models.Profile.role == models.UserRole.VETERINARIAN.value,
            )
            .first()
        )
        if not profile:
            raise NotFoundError("Veterinarian not found")
        portfolio = (
            db.query(models.VetPortfolio)
            .filter(models.VetPortfolio.vet_id == user_id)
            .order_by(models.VetPortfolio.created_at.desc())
            .all()
        )
        return schemas.VetProfileDetail(
            vet=self.to_public(profile),
            portfolio=[schemas.PortfolioRead.model_validate(item) for item in portfolio],
        )

    def online(self) -> List[schemas.OnlineVet]:
        vets = sorted(self.tracker.online_vets.values(), key=lambda vet: vet.full_name.casefold())
        return [
            schemas.OnlineVet(
                id=vet.id,
                user_id=vet.user_id,
                full_name=vet.full_name,
                online_at=vet.online_at,
                latitude=vet.latitude,
                longitude=vet.longitude,
            )
            for vet in vets
        ]
