# main.py
import os
import sys
import logging
import traceback
import tkinter as tk
from tkinter import messagebox
from blobsaver.views.main_view import BlobSaverApp

APP_ROOT = os.path.dirname(os.path.abspath(__file__))


def run() -> None:
    root = tk.Tk()
    BlobSaverApp(root, APP_ROOT)
    root.mainloop()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        run()
    except Exception as e:
        # Show a concise dialog and also print the full traceback to stderr
        try:
            tb = "".join(traceback.format_exception(type(e), e, e.__traceback__))
            print(tb, file=sys.stderr)
            messagebox.showerror("Fatal Error", f"An unexpected error occurred:\n\n{e}")
        except Exception:
            # If Tk/messagebox fails for some reason, at least print the error
            print("Fatal Error:", e, file=sys.stderr)
        raise  # re-raise so external runners/CI can detect failure


if __name__ == "__main__":
    main()
