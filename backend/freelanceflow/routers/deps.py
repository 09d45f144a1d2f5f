"""共通依存関数: 呼び出し元ユーザーの識別"""
from typing import Optional
from fastapi import Header, HTTPException


def require_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """認証ゲートウェイが付与する X-User-Id を取得。なければ401"""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="ログインが必要です")
    if len(user_id) > 64:
        raise HTTPException(status_code=400, detail="ユーザーIDが不正です")
    return user_id
