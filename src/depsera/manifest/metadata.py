"""Sync of the manifest's optional sections.

Aliases, canonical overrides and associations are reconciled after the
service entries. Every item is written inside its own SAVEPOINT: a failing
item appends an error string (making the run ``partial``) and the rest carry
on.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from depsera.manifest.types import (
    ParsedManifest,
    SyncPolicy,
    SyncSummary,
    dumps_compact,
)
from depsera.models.services import (
    CanonicalOverride,
    Dependency,
    DependencyAlias,
    DependencyAssociation,
    Service,
)
from depsera.models.teams import Team
from depsera.utils.datetime import utc_now

logger = logging.getLogger(__name__)


def sync_aliases(
    session: Session,
    team_id: str,
    manifest: ParsedManifest,
    policy: SyncPolicy,
    summary: SyncSummary,
    errors: list[str],
) -> None:
    existing = (
        session.query(DependencyAlias)
        .filter(DependencyAlias.manifest_team_id == team_id)
        .all()
    )
    by_alias = {row.alias: row for row in existing}
    wanted = {a.alias: a.canonical_name for a in manifest.aliases}

    for alias, canonical_name in wanted.items():
        row = by_alias.get(alias)
        if row is None:
            try:
                with session.begin_nested():
                    session.add(
                        DependencyAlias(
                            alias=alias,
                            canonical_name=canonical_name,
                            manifest_team_id=team_id,
                        )
                    )
            except IntegrityError:
                errors.append(
                    f'Alias "{alias}" (-> {canonical_name}) conflicts with an existing '
                    "alias; each alias must be unique across all teams"
                )
                continue
            summary.aliases.created += 1
        elif row.canonical_name != canonical_name:
            row.canonical_name = canonical_name
            summary.aliases.updated += 1
        else:
            summary.aliases.unchanged += 1

    for row in existing:
        if row.alias in wanted:
            continue
        if policy.on_alias_removal == "remove":
            session.delete(row)
            summary.aliases.removed += 1
        else:
            summary.aliases.unchanged += 1
    session.flush()


def _contact_json(contact: Optional[dict]) -> Optional[str]:
    return dumps_compact(contact) if contact else None


def sync_canonical_overrides(
    session: Session,
    team_id: str,
    manifest: ParsedManifest,
    policy: SyncPolicy,
    summary: SyncSummary,
    triggered_by: Optional[str],
    errors: list[str],
) -> None:
    team_rows = (
        session.query(CanonicalOverride)
        .filter(CanonicalOverride.team_id == team_id)
        .all()
    )
    by_name = {row.canonical_name: row for row in team_rows}
    wanted = {o.canonical_name: o for o in manifest.canonical_overrides}

    for canonical_name, override in wanted.items():
        contact = _contact_json(override.contact)
        impact = override.impact
        row = by_name.get(canonical_name)

        if row is None:
            try:
                with session.begin_nested():
                    session.add(
                        CanonicalOverride(
                            canonical_name=canonical_name,
                            team_id=team_id,
                            contact_override=contact,
                            impact_override=impact,
                            manifest_managed=True,
                            updated_by=triggered_by,
                        )
                    )
            except IntegrityError:
                errors.append(
                    f'Override "{canonical_name}" failed: the referenced team or user '
                    f"no longer exists (triggered_by: {triggered_by or 'scheduled sync'})"
                )
                continue
            summary.overrides.created += 1
            continue

        if not row.manifest_managed:
            # A hand-made override for the same name is adopted by the manifest.
            row.manifest_managed = True
            row.contact_override = contact
            row.impact_override = impact
            row.updated_by = triggered_by
            row.updated_at = utc_now()
            summary.overrides.created += 1
        elif row.contact_override != contact or row.impact_override != impact:
            row.contact_override = contact
            row.impact_override = impact
            row.updated_by = triggered_by
            row.updated_at = utc_now()
            summary.overrides.updated += 1
        else:
            summary.overrides.unchanged += 1

    for row in team_rows:
        if not row.manifest_managed or row.canonical_name in wanted:
            continue
        if policy.on_override_removal == "remove":
            session.delete(row)
            summary.overrides.removed += 1
        else:
            summary.overrides.unchanged += 1
    session.flush()


def _service_directory(session: Session, team_id: str) -> tuple[dict, dict]:
    """Lookups for association targets.

    Returns ``(local, namespaced)``: the team's services by manifest key, and
    every keyed service by ``<team key>/<manifest key>``.
    """
    local: dict[str, Service] = {}
    namespaced: dict[str, Service] = {}
    rows = (
        session.query(Service, Team.key)
        .join(Team, Team.id == Service.team_id)
        .filter(Service.manifest_key.isnot(None))
        .all()
    )
    for service, team_key in rows:
        if service.team_id == team_id:
            local[service.manifest_key] = service
        if team_key:
            namespaced[f"{team_key}/{service.manifest_key}"] = service
    return local, namespaced


def _find_dependency(session: Session, service_id: str, name: str) -> Optional[Dependency]:
    for dep in session.query(Dependency).filter(Dependency.service_id == service_id).all():
        if (dep.canonical_name or dep.name) == name or dep.name == name:
            return dep
    return None


def sync_associations(
    session: Session,
    team_id: str,
    manifest: ParsedManifest,
    policy: SyncPolicy,
    summary: SyncSummary,
    errors: list[str],
) -> None:
    """Link dependencies to the services they call.

    ``linked_service_key`` is ``<team key>/<manifest key>`` for any team, or a
    bare manifest key for the syncing team. Entries whose service, dependency
    or target is not known yet are skipped; dependencies only appear once
    health polling has discovered them.
    """
    local, namespaced = _service_directory(session, team_id)
    keep: set[tuple[str, str]] = set()

    for assoc in manifest.associations:
        label = (
            f'service "{assoc.service_key}" dependency "{assoc.dependency_name}" '
            f'-> "{assoc.linked_service_key}"'
        )
        service = local.get(assoc.service_key)
        if service is None:
            continue
        dependency = _find_dependency(session, service.id, assoc.dependency_name)
        if dependency is None:
            continue
        if "/" in assoc.linked_service_key:
            linked = namespaced.get(assoc.linked_service_key)
        else:
            linked = local.get(assoc.linked_service_key)
        if linked is None:
            continue
        keep.add((dependency.id, linked.id))

        row = (
            session.query(DependencyAssociation)
            .filter(
                DependencyAssociation.dependency_id == dependency.id,
                DependencyAssociation.linked_service_id == linked.id,
            )
            .one_or_none()
        )
        if row is not None:
            if row.manifest_managed:
                row.association_type = assoc.association_type
                summary.associations.unchanged += 1
            else:
                row.manifest_managed = True
                row.association_type = assoc.association_type
                summary.associations.created += 1
            continue

        try:
            with session.begin_nested():
                session.add(
                    DependencyAssociation(
                        dependency_id=dependency.id,
                        linked_service_id=linked.id,
                        association_type=assoc.association_type,
                        manifest_managed=True,
                    )
                )
        except IntegrityError:
            errors.append(
                f"Association {label} failed: the dependency or linked service "
                "was removed before the association could be created"
            )
            continue
        summary.associations.created += 1

    if policy.on_association_removal == "remove":
        managed = (
            session.query(DependencyAssociation)
            .join(Dependency, Dependency.id == DependencyAssociation.dependency_id)
            .join(Service, Service.id == Dependency.service_id)
            .filter(
                Service.team_id == team_id,
                Service.manifest_managed.is_(True),
                DependencyAssociation.manifest_managed.is_(True),
            )
            .all()
        )
        for row in managed:
            if (row.dependency_id, row.linked_service_id) not in keep:
                session.delete(row)
                summary.associations.removed += 1
    session.flush()
