import unittest

import labelcheck_core as core
from tests.helpers import SessionTestCase, build_row


class RecordStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.records = [core.build_label_record(row) for row in [
            build_row("A1", "R1", "C1", "D1", "Ref1"),
            build_row("X9", "", "C9", "D9", "Ref9"),
            build_row("B1", "R2", "C2", "D2", "Ref2"),
            build_row("A2", "R1", "C3", "D1", "Ref1"),
            build_row("A3", "R1", "C1", "D1", "Ref1"),
        ]]

    def test_distinct_values_keep_first_seen_order_and_skip_empty(self) -> None:
        self.assertEqual(core.distinct_values(self.records, {}, "Ruta"), ["R1", "R2"])
        self.assertEqual(core.distinct_values(self.records, {"Ruta": "R1"}, "Ciudad"), ["C1", "C3"])

    def test_group_summary_counts_validated_labels(self) -> None:
        self.records[0]["validado"] = True
        summary = core.group_summary(self.records, {"Ruta": "R1"}, "Ciudad", "C1")
        self.assertEqual(summary, {"value": "C1", "validated": 1, "total": 2, "complete": False})

        self.records[4]["validado"] = True
        summary = core.group_summary(self.records, {"Ruta": "R1"}, "Ciudad", "C1")
        self.assertTrue(summary["complete"])

    def test_listing_at_full_filter_returns_records_in_import_order(self) -> None:
        listing = core.build_listing(
            self.records,
            {"Ruta": "R1", "Ciudad": "C1", "Destino": "D1", "Referencia": "Ref1"},
        )
        self.assertEqual(listing["level"], core.LEVEL_LABELS)
        self.assertEqual([record["Etiqueta"] for record in listing["labels"]], ["A1", "A3"])
        self.assertEqual(listing["groups"], [])

    def test_root_groups_cover_every_routed_record(self) -> None:
        listing = core.build_listing(self.records, {})
        routed = [record for record in self.records if record["Ruta"]]
        self.assertEqual(sum(group["total"] for group in listing["groups"]), len(routed))
        for record in routed:
            matches = [group for group in listing["groups"] if group["value"] == record["Ruta"]]
            self.assertEqual(len(matches), 1)


class NavigationTests(SessionTestCase, unittest.TestCase):
    def test_root_listing_for_three_row_scenario(self) -> None:
        self.assertEqual(self.import_rows(), core.OUTCOME_IMPORTED)

        listing = self.session.listing
        self.assertEqual(listing["level"], core.LEVEL_ROUTES)
        self.assertFalse(listing["can_go_back"])
        self.assertEqual(
            listing["groups"],
            [
                {"value": "R1", "validated": 0, "total": 2, "complete": False},
                {"value": "R2", "validated": 0, "total": 1, "complete": False},
            ],
        )
        self.assertEqual(self.session.footer, (0, 3))

    def test_enter_walks_down_to_labels(self) -> None:
        self.import_rows()
        for value, level in [
            ("R1", core.LEVEL_CITIES),
            ("C1", core.LEVEL_DESTINATIONS),
            ("D1", core.LEVEL_REFERENCES),
            ("Ref1", core.LEVEL_LABELS),
        ]:
            listing = self.session.enter(value)
            self.assertEqual(listing["level"], level)
            self.assertEqual(len(self.session.navigation_stack), len(self.session.current_filter))

        self.assertEqual(
            self.session.current_filter,
            {"Ruta": "R1", "Ciudad": "C1", "Destino": "D1", "Referencia": "Ref1"},
        )
        self.assertEqual([record["Etiqueta"] for record in self.session.listing["labels"]], ["A1", "A2"])

    def test_enter_at_labels_level_is_noop(self) -> None:
        self.import_rows()
        for value in ["R1", "C1", "D1", "Ref1"]:
            self.session.enter(value)
        stack_before = list(self.session.navigation_stack)

        self.session.enter("anything")

        self.assertEqual(self.session.navigation_stack, stack_before)
        self.assertEqual(self.session.level, core.LEVEL_LABELS)

    def test_back_round_trips_to_pre_drill_state(self) -> None:
        self.import_rows()
        self.session.enter("R1")
        filter_before = dict(self.session.current_filter)
        stack_before = [dict(frame) for frame in self.session.navigation_stack]

        for value in ["C1", "D1", "Ref1"]:
            self.session.enter(value)
        for _ in range(3):
            self.session.back()

        self.assertEqual(self.session.current_filter, filter_before)
        self.assertEqual(self.session.navigation_stack, stack_before)
        self.assertEqual(self.session.level, core.LEVEL_CITIES)

        self.session.back()
        self.assertEqual(self.session.current_filter, {})
        self.assertEqual(self.session.navigation_stack, [])
        self.assertEqual(self.session.listing["level"], core.LEVEL_ROUTES)

    def test_back_at_root_is_noop(self) -> None:
        self.import_rows()
        listing_before = self.session.listing

        listing = self.session.back()

        self.assertIs(listing, listing_before)
        self.assertEqual(self.session.current_filter, {})
        self.assertEqual(self.session.navigation_stack, [])

    def test_group_badge_tracks_toggles(self) -> None:
        self.import_rows()
        self.session.toggle("A1")
        r1 = self.session.listing["groups"][0]
        self.assertEqual((r1["validated"], r1["total"], r1["complete"]), (1, 2, False))

        self.session.toggle("A2")
        r1 = self.session.listing["groups"][0]
        self.assertEqual((r1["validated"], r1["total"], r1["complete"]), (2, 2, True))

        self.session.enter("R1")
        c1 = self.session.listing["groups"][0]
        self.assertEqual((c1["value"], c1["validated"], c1["total"]), ("C1", 2, 2))

    def test_restore_keeps_stack_and_redisplays_level(self) -> None:
        self.import_rows()
        self.session.enter("R1")
        self.session.enter("C1")
        stack_before = [dict(frame) for frame in self.session.navigation_stack]

        listing = self.session.restore()
        listing = self.session.restore()

        self.assertEqual(listing["level"], core.LEVEL_DESTINATIONS)
        self.assertEqual(self.session.navigation_stack, stack_before)

    def test_restore_rebuilds_inconsistent_stack(self) -> None:
        self.import_rows()
        self.session.state["currentFilter"] = {"Ruta": "R1", "Ciudad": "C1"}
        self.session.state["navigationStack"] = [{"level": "routes", "filter": {}}] * 3

        self.session.restore()

        self.assertEqual(self.session.navigation_stack, core.build_navigation_stack({"Ruta": "R1", "Ciudad": "C1"}))
        self.session.back()
        self.assertEqual(self.session.current_filter, {"Ruta": "R1"})

    def test_dispatch_routes_actions_and_rejects_unknown(self) -> None:
        self.import_rows()
        self.session.dispatch(core.ACTION_ENTER, "R2")
        self.assertEqual(self.session.current_filter, {"Ruta": "R2"})
        self.session.dispatch(core.ACTION_BACK)
        self.assertEqual(self.session.current_filter, {})

        with self.assertRaises(ValueError):
            self.session.dispatch("teleport")


if __name__ == "__main__":
    unittest.main()
