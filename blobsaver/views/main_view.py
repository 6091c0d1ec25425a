# views/main_view.py
from __future__ import annotations

import tkinter as tk
from tkinter import messagebox, filedialog
from tkinter.ttk import Label, Button, Frame, Scrollbar

from ..errors import FormField, TSSCheckerError
from ..models import SaveOutcome
from ..viewmodels.blobsaver_vm import BlobSaverViewModel

MAX_LOG_LINES = 5000

# (field, label, config key holding its default)
FORM_FIELDS = (
    (FormField.ECID, "ECID:", "ecid"),
    (FormField.DEVICE, "Device Identifier:", "device_identifier"),
    (FormField.BOARD_CONFIG, "Board Config (optional):", "board_config"),
    (FormField.APNONCE, "APNonce (optional):", None),
    (FormField.VERSION, "Versions (blank = all signed):", None),
    (FormField.IPSW_URL, "Beta .ipsw URL (optional):", None),
    (FormField.BUILD_ID, "Build ID (optional):", None),
    (FormField.SAVE_PATH, "Save Path:", "save_path"),
)


class BlobSaverApp:
    """Tk 'View' layer. No business logic lives here, it's all in the ViewModel."""

    def __init__(self, root: tk.Tk, base_dir: str):
        self.root = root
        self.base_dir = base_dir

        self.root.title("blobsaver")
        self.root.geometry("620x560")

        # --- ViewModel ---
        self.vm = BlobSaverViewModel(self.base_dir)
        # the VM calls back from its worker thread
        self.vm.on_title = lambda title: self.root.after(0, self._on_title, title)
        self.vm.on_status = lambda msg, err=False: self.root.after(0, self._on_status, msg, err)
        self.vm.on_log = lambda msg, err=False: self.root.after(0, self._on_log, msg, err)
        self.vm.on_completed = lambda outcome: self.root.after(0, self._on_completed, outcome)

        # === Form ===
        form = Frame(self.root)
        form.pack(fill="x", padx=10, pady=(15, 5))
        form.columnconfigure(1, weight=1)
        self.vars = {}
        self.entries = {}
        cfg = self.vm.get_config()
        for row, (field, label, key) in enumerate(FORM_FIELDS):
            Label(form, text=label).grid(row=row, column=0, sticky="w", pady=2)
            var = tk.StringVar(value=cfg.get(key, "") if key else "")
            entry = tk.Entry(form, textvariable=var)
            entry.grid(row=row, column=1, sticky="ew", pady=2)
            self.vars[field] = var
            self.entries[field] = entry
        self._normal_bg = self.entries[FormField.ECID].cget("highlightbackground")
        Button(form, text="Browse...", command=self.browse_save_path).grid(
            row=len(FORM_FIELDS) - 1, column=2, padx=(4, 0))

        # === Buttons ===
        btns = Frame(self.root)
        btns.pack(pady=8)
        self.save_button = Button(btns, text="Save Blobs", command=self.on_save)
        self.save_button.pack(side="left", padx=4)
        self.cancel_button = Button(btns, text="Cancel", command=self.vm.cancel, state="disabled")
        self.cancel_button.pack(side="left", padx=4)

        # === Status ===
        self.status_var = tk.StringVar()
        self.status_label = tk.Label(self.root, textvariable=self.status_var, anchor="w", fg="blue")
        self.status_label.pack(fill="x", padx=10, pady=(0, 5))

        # === Collapsible Log (create BEFORE first status) ===
        self.log_visible = False
        self.toggle_log_button = Button(self.root, text="Show Log ▼", command=self.toggle_log)
        self.toggle_log_button.pack(fill="x", padx=10, pady=(0, 2))

        self.log_frame = Frame(self.root)
        self.log_text = tk.Text(
            self.log_frame, wrap="word", height=10, state="disabled",
            bg="#222", fg="#eee", font=("Consolas", 10)
        )
        self.log_text.pack(side="left", fill="both", expand=True)
        self.scrollbar = Scrollbar(self.log_frame, command=self.log_text.yview)
        self.scrollbar.pack(side="right", fill="y")
        self.log_text.config(yscrollcommand=self.scrollbar.set)
        self.log_text.tag_configure("error", foreground="red")
        self.log_text.tag_configure("info", foreground="#eee")

        self._on_status(f"Using tsschecker at: {cfg.get('tsschecker_path')}", False)

    # ===== VM event handlers =====
    def _on_title(self, title: str):
        self.root.title(f"blobsaver - {title}")

    def _on_status(self, msg: str, is_error: bool):
        self.status_var.set(msg.splitlines()[0] if msg else "")
        self.status_label.config(fg="red" if is_error else "blue")
        self._append_log(msg, is_error)

    def _on_log(self, msg: str, is_error: bool):
        self._append_log(msg, is_error)

    def _append_log(self, message: str, is_error: bool = False):
        """Append a line to the log window, auto-scroll, and drop the oldest lines past the cap."""
        self.log_text.config(state="normal")
        self.log_text.insert("end", (message or "").rstrip() + "\n", "error" if is_error else "info")
        overflow = int(self.log_text.index("end-1c").split(".")[0]) - MAX_LOG_LINES
        if overflow > 0:
            self.log_text.delete("1.0", f"{overflow + 1}.0")
        self.log_text.see("end")
        self.log_text.config(state="disabled")

    def _on_completed(self, outcome: SaveOutcome):
        self.root.title("blobsaver")
        self.save_button.config(state="normal")
        self.cancel_button.config(state="disabled")
        if outcome.success:
            messagebox.showinfo("Success", "Successfully saved blobs!")
        elif outcome.error is not None:
            self.show_error(outcome.error)

    def show_error(self, error: TSSCheckerError):
        for field in error.invalid_fields:
            self.entries[field].config(highlightbackground="red", highlightcolor="red", highlightthickness=2)
        if error.is_reportable():
            if error.log:
                self.root.clipboard_clear()
                self.root.clipboard_append(error.log)
            messagebox.showerror("Error", str(error))
        else:
            messagebox.showwarning("Error", str(error))

    # ===== UI actions =====
    def toggle_log(self):
        if self.log_visible:
            self.log_frame.pack_forget()
            self.toggle_log_button.config(text="Show Log ▼")
        else:
            self.log_frame.pack(fill="both", expand=True, padx=10, pady=(0, 10))
            self.toggle_log_button.config(text="Hide Log ▲")
        self.log_visible = not self.log_visible

    def browse_save_path(self):
        path = filedialog.askdirectory(title="Select Save Folder")
        if path:
            self.vars[FormField.SAVE_PATH].set(path)

    def on_save(self):
        for entry in self.entries.values():
            entry.config(highlightbackground=self._normal_bg, highlightthickness=1)
        values = {field: var.get() for field, var in self.vars.items()}
        request = self.vm.make_request(
            ecid=values[FormField.ECID],
            save_path=values[FormField.SAVE_PATH],
            device_identifier=values[FormField.DEVICE],
            device_name=self.vm.get_config().get("device_name", ""),
            board_config=values[FormField.BOARD_CONFIG],
            apnonce=values[FormField.APNONCE],
            ipsw_url=values[FormField.IPSW_URL],
            build_id=values[FormField.BUILD_ID],
            versions=values[FormField.VERSION],
        )
        self.save_button.config(state="disabled")
        self.cancel_button.config(state="normal")
        self.vm.save_async(request)
