import unittest
from datetime import date
from unittest import mock

from sqlalchemy.exc import OperationalError
from sqlalchemy.sql.dml import Update

from _support import make_profile, new_session, reset_database

from models.checkout_models import Category, InventoryItem
from services.catalog_service import create_item, delete_item, get_item, list_items, serialize_item, update_item
from services.category_service import add_category, list_categories, remove_category, rename_category
from services.errors import ConflictError, NotFoundError, PartialFailure, ValidationError
from services.rental_service import checkout, get_rental, process_return, serialize_rental


TODAY = date(2026, 3, 2)


class CatalogTests(unittest.TestCase):
    def setUp(self):
        reset_database()
        self.db = new_session()
        self.holder = make_profile(self.db, "park@school.test", "teacher", "Park Teacher")

    def tearDown(self):
        self.db.close()

    def test_create_item_validation(self):
        with self.assertRaises(ValidationError):
            create_item(self.db, name="  ", category="IT", total_qty=1)
        with self.assertRaises(ValidationError):
            create_item(self.db, name="Laptop", category="", total_qty=1)
        with self.assertRaises(ValidationError):
            create_item(self.db, name="Laptop", category="IT", total_qty=0)

        item = create_item(self.db, name=" Laptop ", category="IT", total_qty=3)
        payload = serialize_item(item)
        self.assertEqual(payload["name"], "Laptop")
        self.assertEqual(payload["availableQty"], 3)
        self.assertEqual((payload["rentedQty"], payload["brokenQty"]), (0, 0))

    def test_total_can_not_drop_below_units_in_use(self):
        item = create_item(self.db, name="Camera", category="AV", total_qty=5)
        rental = checkout(self.db, holder_id=self.holder.ProfileID, item_id=item.ItemID, quantity=3,
                          due_date=TODAY, today=TODAY)
        process_return(self.db, rental.RentalID, return_qty=1, broken_qty=1, proof="p")

        with self.assertRaises(ConflictError) as ctx:
            update_item(self.db, item.ItemID, {"totalQty": 2})
        self.assertEqual(ctx.exception.details["inUseQty"], 3)
        self.assertEqual(get_item(self.db, item.ItemID).TotalQty, 5)

        updated = update_item(self.db, item.ItemID, {"totalQty": 3, "name": "Camera Kit"})
        self.assertEqual(updated.TotalQty, 3)
        self.assertEqual(updated.ItemName, "Camera Kit")
        self.assertEqual(serialize_item(updated)["availableQty"], 0)

    def test_delete_item_refused_while_rented(self):
        item = create_item(self.db, name="Tablet", category="IT", total_qty=2)
        rental = checkout(self.db, holder_id=self.holder.ProfileID, item_id=item.ItemID, quantity=1,
                          due_date=TODAY, today=TODAY)
        with self.assertRaises(ConflictError):
            delete_item(self.db, item.ItemID)

        process_return(self.db, rental.RentalID, return_qty=1, broken_qty=0, proof="p")
        delete_item(self.db, item.ItemID)
        with self.assertRaises(NotFoundError):
            get_item(self.db, item.ItemID)

        history = get_rental(self.db, rental.RentalID)
        self.assertIsNone(history.ItemID)
        self.assertEqual(serialize_rental(history, TODAY)["itemName"], "Tablet")

    def test_list_filters_search_and_sorts(self):
        laptop = create_item(self.db, name="Laptop", category="IT", total_qty=5)
        stand = create_item(self.db, name="Laptop Stand", category="IT", total_qty=2)
        projector = create_item(self.db, name="Projector", category="AV", total_qty=3)
        checkout(self.db, holder_id=self.holder.ProfileID, item_id=laptop.ItemID, quantity=4,
                 due_date=TODAY, today=TODAY)

        def names(**kwargs):
            return [item.ItemName for item in list_items(self.db, **kwargs)]

        self.assertEqual(names(category="IT", sort="name"), ["Laptop", "Laptop Stand"])
        self.assertEqual(names(category="all", search="lap", sort="name"), ["Laptop", "Laptop Stand"])
        self.assertEqual(names(search="JECT"), ["Projector"])
        self.assertEqual(names(search="100%"), [])
        self.assertEqual(names(sort="available"), ["Projector", "Laptop Stand", "Laptop"])
        self.assertEqual(
            [item.ItemID for item in list_items(self.db)],
            [projector.ItemID, stand.ItemID, laptop.ItemID],
        )
        with self.assertRaises(ValidationError):
            list_items(self.db, sort="price")

    def test_search_folds_non_ascii_case(self):
        create_item(self.db, name="Äpfel Korb", category="Küche", total_qty=1)
        create_item(self.db, name="Éclair Tray", category="Küche", total_qty=1)
        create_item(self.db, name="Apple Crate", category="Küche", total_qty=1)

        def names(search):
            return [item.ItemName for item in list_items(self.db, search=search, sort="name")]

        self.assertEqual(names("äpfel"), ["Äpfel Korb"])
        self.assertEqual(names("ÄPFEL"), ["Äpfel Korb"])
        self.assertEqual(names("éCLAIR"), ["Éclair Tray"])
        self.assertEqual(names("apple"), ["Apple Crate"])


class CategoryTests(unittest.TestCase):
    def setUp(self):
        reset_database()
        self.db = new_session()

    def tearDown(self):
        self.db.close()

    def test_add_category_rules(self):
        add_category(self.db, "IT기기")
        with self.assertRaises(ConflictError):
            add_category(self.db, " IT기기 ")
        with self.assertRaises(ValidationError):
            add_category(self.db, "")
        # Names are case sensitive.
        add_category(self.db, "it기기")
        self.assertEqual([c.CategoryName for c in list_categories(self.db)], ["IT기기", "it기기"])

    def test_rename_retags_matching_items_only(self):
        category = add_category(self.db, "IT기기")
        add_category(self.db, "음향")
        laptop = create_item(self.db, name="Laptop", category="IT기기", total_qty=1)
        tablet = create_item(self.db, name="Tablet", category="IT기기", total_qty=1)
        speaker = create_item(self.db, name="Speaker", category="음향", total_qty=1)

        renamed, retagged = rename_category(self.db, category.CategoryID, "IT장비")

        self.assertEqual(renamed.CategoryName, "IT장비")
        self.assertEqual(retagged, 2)
        self.assertEqual(get_item(self.db, laptop.ItemID).Category, "IT장비")
        self.assertEqual(get_item(self.db, tablet.ItemID).Category, "IT장비")
        self.assertEqual(get_item(self.db, speaker.ItemID).Category, "음향")
        self.assertEqual(list_items(self.db, category="IT기기"), [])

    def test_rename_to_same_name_is_noop(self):
        category = add_category(self.db, "IT기기")
        create_item(self.db, name="Laptop", category="IT기기", total_qty=1)
        renamed, retagged = rename_category(self.db, category.CategoryID, "IT기기")
        self.assertEqual((renamed.CategoryName, retagged), ("IT기기", 0))

    def test_rename_to_existing_name_conflicts(self):
        category = add_category(self.db, "IT기기")
        add_category(self.db, "음향")
        with self.assertRaises(ConflictError):
            rename_category(self.db, category.CategoryID, "음향")
        with self.assertRaises(NotFoundError):
            rename_category(self.db, 999, "anything")

    def test_failed_retag_rolls_back_rename(self):
        category = add_category(self.db, "IT기기")
        laptop = create_item(self.db, name="Laptop", category="IT기기", total_qty=1)
        real_execute = self.db.execute

        def flaky_execute(statement, *args, **kwargs):
            if isinstance(statement, Update) and statement.table.name == InventoryItem.__tablename__:
                raise OperationalError("UPDATE InventoryItems", {}, Exception("database is locked"))
            return real_execute(statement, *args, **kwargs)

        with mock.patch.object(self.db, "execute", side_effect=flaky_execute):
            with self.assertRaises(PartialFailure) as ctx:
                rename_category(self.db, category.CategoryID, "IT장비")

        payload = ctx.exception.to_payload()
        self.assertEqual(payload["completedSteps"], ["renameCategory"])
        self.assertEqual(payload["failedStep"], "retagItems")
        self.assertTrue(payload["rolledBack"])

        stored = self.db.get(Category, category.CategoryID, populate_existing=True)
        self.assertEqual(stored.CategoryName, "IT기기")
        self.assertEqual(get_item(self.db, laptop.ItemID).Category, "IT기기")

    def test_remove_category_leaves_items_tagged(self):
        category = add_category(self.db, "IT기기")
        laptop = create_item(self.db, name="Laptop", category="IT기기", total_qty=1)
        remove_category(self.db, category.CategoryID)
        self.assertEqual(list_categories(self.db), [])
        self.assertEqual(get_item(self.db, laptop.ItemID).Category, "IT기기")


if __name__ == "__main__":
    unittest.main()
