"""
Tests for declarative catalog sync.
"""

import json

import pytest

from subscrio.catalog.models import CatalogStatus
from subscrio.catalog.sync import CatalogConfig, CatalogSyncService
from subscrio.core.billing_cycle import DurationUnit
from subscrio.exceptions import ValidationError

pytestmark = pytest.mark.asyncio


def catalog_document(**overrides):
    document = {
        "version": "1.0",
        "features": [
            {"key": "api-calls", "displayName": "API calls", "valueType": "numeric",
             "defaultValue": "100"},
            {"key": "exports", "displayName": "Exports", "valueType": "toggle",
             "defaultValue": "false"},
        ],
        "products": [
            {
                "key": "analytics",
                "displayName": "Analytics",
                "features": ["api-calls", "exports"],
                "plans": [
                    {
                        "key": "starter",
                        "displayName": "Starter",
                        "billingCycles": [
                            {"key": "starter-forever", "displayName": "Starter",
                             "durationUnit": "forever"},
                        ],
                    },
                    {
                        "key": "team",
                        "displayName": "Team",
                        "onExpireTransitionToBillingCycleKey": "starter-forever",
                        "featureValues": {"api-calls": "10000", "exports": "true"},
                        "billingCycles": [
                            {"key": "team-monthly", "displayName": "Team monthly",
                             "durationUnit": "months", "durationValue": 1,
                             "externalPriceId": "price_team"},
                        ],
                    },
                ],
            }
        ],
    }
    document.update(overrides)
    return document


def team_plan(document):
    return document["products"][0]["plans"][1]


@pytest.fixture
def catalog_sync(catalog_service):
    return CatalogSyncService(catalog_service)


class TestParsing:
    """Test configuration document validation."""

    def test_camel_case_document(self):
        config = CatalogSyncService.parse(catalog_document())
        plan = config.products[0].plans[1]
        assert plan.on_expire_transition_to_billing_cycle_key == "starter-forever"
        assert plan.billing_cycles[0].duration_unit is DurationUnit.MONTHS

    def test_snake_case_names_accepted(self):
        config = CatalogConfig(
            version="1",
            features=[
                {"key": "seats", "display_name": "Seats", "value_type": "numeric",
                 "default_value": "1"}
            ],
        )
        assert config.features[0].display_name == "Seats"

    def test_json_text(self):
        config = CatalogSyncService.parse(json.dumps(catalog_document()))
        assert [f.key for f in config.features] == ["api-calls", "exports"]

    def test_duplicate_feature_key_rejected(self):
        document = catalog_document()
        document["features"].append(dict(document["features"][0]))
        with pytest.raises(ValidationError) as exc_info:
            CatalogSyncService.parse(document)
        assert "Duplicate feature key 'api-calls'" in str(exc_info.value.context["errors"])

    def test_undefined_product_feature_rejected(self):
        document = catalog_document()
        document["products"][0]["features"].append("sso")
        with pytest.raises(ValidationError):
            CatalogSyncService.parse(document)

    def test_plan_value_for_unassociated_feature_rejected(self):
        document = catalog_document()
        document["products"][0]["features"] = ["api-calls"]
        with pytest.raises(ValidationError):
            CatalogSyncService.parse(document)

    def test_invalid_plan_value_rejected(self):
        document = catalog_document()
        team_plan(document)["featureValues"]["api-calls"] = "lots"
        with pytest.raises(ValidationError):
            CatalogSyncService.parse(document)

    def test_transition_outside_product_rejected(self):
        document = catalog_document()
        team_plan(document)["onExpireTransitionToBillingCycleKey"] = "elsewhere"
        with pytest.raises(ValidationError):
            CatalogSyncService.parse(document)

    def test_inconsistent_duration_rejected(self):
        document = catalog_document()
        team_plan(document)["billingCycles"][0].pop("durationValue")
        with pytest.raises(ValidationError):
            CatalogSyncService.parse(document)

    @pytest.mark.parametrize("document", [{"version": ""}, {"version": "1", "extra": True}])
    def test_malformed_root_rejected(self, document):
        with pytest.raises(ValidationError):
            CatalogSyncService.parse(document)


class TestSync:
    """Test reconciling the stored catalog with a document."""

    async def test_creates_catalog(self, catalog_sync, catalog_service):
        report = await catalog_sync.sync(catalog_document())

        assert report.errors == []
        assert report.created.model_dump() == {
            "features": 2, "products": 1, "plans": 2, "billing_cycles": 2
        }
        team = await catalog_service.get_plan("team")
        assert team.on_expire_transition_to_billing_cycle_key == "starter-forever"
        assert await catalog_service.get_plan_feature_value("team", "exports") == "true"
        cycle = await catalog_service.get_billing_cycle("team-monthly")
        assert cycle.external_price_id == "price_team"
        features = await catalog_service.get_features_by_product("analytics")
        assert {f.key for f in features} == {"api-calls", "exports"}

    async def test_resync_is_noop(self, catalog_sync, catalog_service):
        await catalog_sync.sync(catalog_document())
        version = (await catalog_service.get_plan("team")).version

        report = await catalog_sync.sync(catalog_document())

        assert report.created.model_dump() == report.updated.model_dump() == {
            "features": 0, "products": 0, "plans": 0, "billing_cycles": 0
        }
        assert report.errors == report.warnings == []
        assert (await catalog_service.get_plan("team")).version == version

    async def test_updates_existing_entities(self, catalog_sync, catalog_service):
        await catalog_sync.sync(catalog_document())
        document = catalog_document()
        document["features"][0]["defaultValue"] = "250"
        document["products"][0]["features"] = ["api-calls"]
        plan = team_plan(document)
        plan["displayName"] = "Team plus"
        plan["featureValues"] = {"api-calls": "20000"}
        plan["billingCycles"][0]["externalPriceId"] = "price_team_v2"

        report = await catalog_sync.sync(document)

        assert report.errors == []
        assert report.updated.features == 1
        assert report.updated.plans == 1
        assert report.updated.billing_cycles == 1
        assert (await catalog_service.get_feature("api-calls")).default_value == "250"
        assert (await catalog_service.get_plan("team")).display_name == "Team plus"
        assert await catalog_service.get_plan_feature_value("team", "api-calls") == "20000"
        assert await catalog_service.get_plan_feature_value("team", "exports") is None
        features = await catalog_service.get_features_by_product("analytics")
        assert [f.key for f in features] == ["api-calls"]
        cycle = await catalog_service.get_billing_cycle("team-monthly")
        assert cycle.external_price_id == "price_team_v2"

    async def test_archive_and_unarchive(self, catalog_sync, catalog_service):
        await catalog_sync.sync(catalog_document())
        document = catalog_document()
        team_plan(document)["archived"] = True

        report = await catalog_sync.sync(document)
        assert report.archived.plans == 1
        assert (await catalog_service.get_plan("team")).status is CatalogStatus.ARCHIVED

        team_plan(document)["archived"] = False
        report = await catalog_sync.sync(document)
        assert report.unarchived.plans == 1
        assert (await catalog_service.get_plan("team")).status is CatalogStatus.ACTIVE

    async def test_transition_cleared(self, catalog_sync, catalog_service):
        await catalog_sync.sync(catalog_document())
        document = catalog_document()
        del team_plan(document)["onExpireTransitionToBillingCycleKey"]

        await catalog_sync.sync(document)

        team = await catalog_service.get_plan("team")
        assert team.on_expire_transition_to_billing_cycle_key is None

    async def test_entities_outside_document_ignored(self, catalog_sync, catalog_service):
        await catalog_service.create_feature("legacy", "Legacy", "toggle", "false")

        report = await catalog_sync.sync(catalog_document())

        assert report.ignored.features == 1
        assert (await catalog_service.get_feature("legacy")).status is CatalogStatus.ACTIVE

    async def test_value_type_change_warns(self, catalog_sync, catalog_service):
        await catalog_service.create_feature("exports", "Exports", "text", "none")

        report = await catalog_sync.sync(catalog_document())

        assert [(w.entity_type, w.key) for w in report.warnings] == [("feature", "exports")]
        feature = await catalog_service.get_feature("exports")
        assert feature.default_value == "none"

    async def test_failing_entity_reported_and_rest_applied(self, catalog_sync, catalog_service):
        await catalog_service.create_product("reports", "Reports")
        await catalog_service.create_plan("reports", "legacy", "Legacy")
        await catalog_service.create_billing_cycle(
            "legacy", "team-monthly", "Legacy monthly", "months", 1
        )

        report = await catalog_sync.sync(catalog_document())

        assert [(e.entity_type, e.key) for e in report.errors] == [
            ("billing_cycle", "team-monthly")
        ]
        assert report.created.billing_cycles == 1
        assert await catalog_service.get_plan_feature_value("team", "api-calls") == "10000"

    async def test_sync_from_file(self, catalog_sync, catalog_service, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps(catalog_document()), encoding="utf-8")

        report = await catalog_sync.sync_from_file(path)

        assert report.created.plans == 2
        assert await catalog_service.get_product("analytics") is not None

    async def test_missing_file_rejected(self, catalog_sync, tmp_path):
        with pytest.raises(ValidationError):
            await catalog_sync.sync_from_file(tmp_path / "missing.json")
