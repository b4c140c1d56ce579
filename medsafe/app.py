# medsafe/app.py
# KivyMD dashboard: today's adherence and dose list for the signed-in user.
# Run:  medsafe-gui   (needs the "gui" extra)
import os, logging
from datetime import datetime
from typing import Optional

from kivy.lang import Builder
from kivy.clock import Clock

from kivymd.app import MDApp
from kivymd.uix.dialog import MDDialog
from kivymd.uix.button import MDFlatButton, MDRaisedButton
from kivymd.uix.list import TwoLineIconListItem, IconLeftWidget

from . import config
from .coordinator import TriggerCoordinator
from .crypto import get_or_create_key
from .errors import StorageError
from .logs import clear_log, log_text
from .session import Session
from .store import EncryptedStore
from .timing import format_time

logger = logging.getLogger("medsafe.app")

STATE_ICONS = {"pending": "clock-outline", "taken": "check-circle", "missed": "alert-circle"}

KV = """
MDScreen:
    MDBoxLayout:
        orientation: "vertical"

        MDTopAppBar:
            title: "MedSafe"
            elevation: 10
            right_action_items: [["refresh", lambda x: app.refresh_all()]]

        MDBoxLayout:
            orientation: "vertical"
            padding: "12dp"
            spacing: "12dp"

            MDLabel:
                id: adherence
                text: "—"
                font_style: "H3"
                halign: "center"
                size_hint_y: None
                height: "96dp"

            MDLabel:
                id: adherence_detail
                text: "Adherence today"
                theme_text_color: "Secondary"
                halign: "center"
                size_hint_y: None
                height: "28dp"

            MDLabel:
                text: "Today's doses (tap to log)"
                bold: True
                size_hint_y: None
                height: "28dp"

            ScrollView:
                MDList:
                    id: dose_list

            MDLabel:
                text: "Debug log"
                bold: True
                size_hint_y: None
                height: "28dp"

            ScrollView:
                size_hint_y: 0.5
                MDLabel:
                    id: debug_log
                    text: ""
                    size_hint_y: None
                    height: self.texture_size[1]

            MDBoxLayout:
                spacing: "10dp"
                size_hint_y: None
                height: "48dp"
                MDRaisedButton:
                    text: "Refresh Log"
                    on_release: app.refresh_log()
                MDRaisedButton:
                    text: "Clear Log"
                    on_release: app.clear_log()
"""


class MedSafeApp(MDApp):
    def __init__(self, user_id: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.user_id = user_id or os.environ.get("MEDSAFE_USER", "local")
        self.store: Optional[EncryptedStore] = None
        self.session: Optional[Session] = None
        self.coordinator: Optional[TriggerCoordinator] = None

    def build(self):
        self.title = "MedSafe"
        self.theme_cls.theme_style = "Dark"
        self.theme_cls.primary_palette = "Blue"
        return Builder.load_string(KV)

    def on_start(self):
        logger.info("app start base=%s user=%s", config.BASE_DIR, self.user_id)
        self.store = EncryptedStore(get_or_create_key())
        self.session = Session(self.user_id)
        self.coordinator = TriggerCoordinator(self.store, self.session)
        # listeners may run on the timer thread
        self.coordinator.bind(lambda pct: Clock.schedule_once(lambda *_: self.refresh_all(), 0))
        self.coordinator.start()
        Clock.schedule_once(lambda *_: self.view_appeared(), 0.4)

    def on_resume(self):
        self.view_appeared()

    def on_stop(self):
        if self.coordinator:
            self.coordinator.close()

    def view_appeared(self):
        if self.coordinator:
            self.coordinator.view_appeared()
        self.refresh_all()

    def refresh_all(self):
        self.refresh_adherence()
        self.refresh_doses()
        self.refresh_log()

    def refresh_adherence(self):
        if not self.coordinator:
            return
        snap = self.coordinator.snapshot
        self.root.ids.adherence.text = f"{self.coordinator.overall_daily_adherence}%"
        if snap is not None:
            self.root.ids.adherence_detail.text = f"Adherence today • {snap.taken}/{snap.due} due doses taken"

    def refresh_doses(self):
        if not self.store:
            return
        try:
            now = datetime.now()
            dl = self.root.ids.dose_list
            dl.clear_widgets()
            for med in self.store.query_active_medicines(self.user_id, now):
                for dose in med.doses:
                    state = dose.state(now).value
                    item = TwoLineIconListItem(
                        text=f"{med.name}  •  {med.dosage}".strip(" •"),
                        secondary_text=f"{format_time(dose.time)} • {state}",
                    )
                    item.add_widget(IconLeftWidget(icon=STATE_ICONS.get(state, "pill")))
                    item.on_release = lambda m=med, d=dose: self.show_log_dose_dialog(m, d)
                    dl.add_widget(item)
        except StorageError:
            logger.exception("refresh_doses failed")

    def refresh_log(self):
        self.root.ids.debug_log.text = log_text()

    def clear_log(self):
        clear_log()
        self.root.ids.debug_log.text = ""

    def show_log_dose_dialog(self, med, dose):
        def log(taken: bool):
            try:
                self.store.mark_dose(med.id, dose.id, taken)
            except StorageError:
                logger.exception("log dose failed")
            self.refresh_all()

        dialog = MDDialog(
            title="Log dose",
            text=f"{med.name} {med.dosage}\nScheduled: {format_time(dose.time)}".strip(),
            buttons=[
                MDFlatButton(text="Missed", on_release=lambda *_: (log(False), dialog.dismiss())),
                MDRaisedButton(text="Taken", on_release=lambda *_: (log(True), dialog.dismiss())),
            ],
        )
        dialog.open()


def main():
    MedSafeApp().run()


if __name__ == "__main__":
    main()
