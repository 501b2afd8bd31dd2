import os
import time

import streamlit as st

from doc_pipeline.client import ClientError, DocPipelineClient

API_BASE = os.getenv("DOC_PIPELINE_API_BASE", os.getenv("API_BASE", "http://localhost:8080")).rstrip("/")
POLL_INTERVAL = float(os.getenv("DOC_PIPELINE_UI_POLL_SEC", "1.5"))
METHODS = ["Simple", "Marker", "OlmOcr"]


def _reset_state():
    for key in ["task_id", "status", "result_text", "images", "error"]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    st.session_state["upload_key"] = st.session_state.get("upload_key", 0) + 1


def _track(client: DocPipelineClient, task_id: int) -> dict | None:
    with st.status("Tracking document status...", expanded=True) as status_box:
        text_slot = st.empty()
        while True:
            try:
                data = client.get_status(task_id)
            except ClientError as e:
                st.session_state["error"] = f"Status check failed: {e}"
                status_box.update(label="Status check failed", state="error")
                return None
            st.session_state["status"] = data.get("status", "unknown")
            text_slot.write(f"Status: {st.session_state['status']}")
            if data.get("completed"):
                if data.get("success"):
                    status_box.update(label="Conversion completed", state="complete")
                else:
                    status_box.update(label="Conversion failed", state="error")
                return data
            time.sleep(POLL_INTERVAL)


def main() -> None:
    st.set_page_config(page_title="Document Pipeline", page_icon="📄", layout="centered")
    st.title("📄 Document Pipeline")
    st.caption(f"API base: {API_BASE}")
    client = DocPipelineClient(API_BASE)

    if st.button("Restart", type="secondary"):
        _reset_state()
        st.rerun()

    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader("Upload a PDF", type=["pdf"], key=f"uploader-{st.session_state['upload_key']}")
    method = st.selectbox("Conversion method", METHODS, index=0)

    if uploaded and "task_id" not in st.session_state and st.button("Start Conversion", type="primary"):
        with st.spinner("Uploading..."):
            try:
                data = client.submit_file(uploaded, filename=uploaded.name, conversion_method=method)
            except ClientError as e:
                st.session_state["error"] = f"Upload failed: {e}"
            else:
                st.session_state["task_id"] = data["request_id"]
                st.toast("Document queued", icon="✅")

    if "task_id" in st.session_state and "result_text" not in st.session_state and "error" not in st.session_state:
        data = _track(client, st.session_state["task_id"])
        if data is not None:
            if data.get("success"):
                st.session_state["result_text"] = data.get("markdown") or ""
                st.session_state["images"] = data.get("images") or {}
            else:
                st.session_state["error"] = data.get("error") or "Conversion failed"

    if "result_text" in st.session_state:
        st.success("Conversion complete!")
        md = st.session_state["result_text"]
        st.download_button(
            label="Download Markdown",
            data=md.encode("utf-8"),
            file_name="conversion.md",
            mime="text/markdown",
        )
        with st.expander("Preview"):
            st.markdown(md)
        if st.session_state.get("images"):
            st.caption(f"{len(st.session_state['images'])} extracted image(s)")

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
